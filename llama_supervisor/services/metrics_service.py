"""
Prometheus Metrics Module

Counters, gauges and histograms for the supervision layer, built with
prometheus-client. Each MetricsService owns its own CollectorRegistry so
several supervisors (or test cases) never collide on metric names.

Metric Groups:
    - Process lifecycle: starts, stops, running flag
    - Watchdog: restarts by result
    - Model swaps: swaps by role/result, swap duration
    - Vision server: active requests, state
    - Downloads: bytes, completed/failed downloads
    - GPU: free VRAM

Usage:
    metrics = MetricsService()
    metrics.record_start(True)
    text = metrics.render()   # Prometheus exposition format
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, Histogram, generate_latest
)


logger = logging.getLogger(__name__)


VISION_STATE_VALUES = {"stopped": 0, "starting": 1, "ready": 2, "stopping": 3}


class MetricsService:
    """Holds all supervisor metrics on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Process lifecycle
        self.process_starts = Counter(
            "supervisor_process_starts_total",
            "llama-server start attempts",
            ["result"],
            registry=self.registry
        )
        self.process_stops = Counter(
            "supervisor_process_stops_total",
            "llama-server stops",
            registry=self.registry
        )
        self.process_running = Gauge(
            "supervisor_process_running",
            "1 while the primary llama-server runs",
            registry=self.registry
        )

        # Watchdog
        self.watchdog_restarts = Counter(
            "supervisor_watchdog_restarts_total",
            "Watchdog restart attempts",
            ["result"],
            registry=self.registry
        )

        # Swaps
        self.swaps = Counter(
            "supervisor_model_swaps_total",
            "Model role swaps",
            ["role", "result"],
            registry=self.registry
        )
        self.swap_duration = Histogram(
            "supervisor_model_swap_duration_seconds",
            "Time from swap start to healthy server",
            ["role"],
            buckets=(1.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
            registry=self.registry
        )

        # Vision server
        self.vision_active_requests = Gauge(
            "supervisor_vision_active_requests",
            "In-flight image analysis requests",
            registry=self.registry
        )
        self.vision_state = Gauge(
            "supervisor_vision_state",
            "Vision server state (0=stopped, 1=starting, 2=ready, 3=stopping)",
            registry=self.registry
        )

        # Downloads
        self.download_bytes = Counter(
            "supervisor_download_bytes_total",
            "Bytes written by model downloads",
            registry=self.registry
        )
        self.downloads = Counter(
            "supervisor_downloads_total",
            "Finished download calls",
            ["result"],
            registry=self.registry
        )

        # GPU
        self.vram_free = Gauge(
            "supervisor_vram_free_mb",
            "Free VRAM at the last budget check",
            registry=self.registry
        )

    def record_start(self, success: bool) -> None:
        self.process_starts.labels(result="success" if success else "failure").inc()
        if success:
            self.process_running.set(1)

    def record_stop(self) -> None:
        self.process_stops.inc()
        self.process_running.set(0)

    def record_restart(self, success: bool) -> None:
        self.watchdog_restarts.labels(result="success" if success else "failure").inc()

    def record_swap(self, role: str, success: bool, duration_sec: float) -> None:
        self.swaps.labels(role=role, result="success" if success else "failure").inc()
        if success:
            self.swap_duration.labels(role=role).observe(duration_sec)

    def set_vision_state(self, state: str) -> None:
        self.vision_state.set(VISION_STATE_VALUES.get(state, 0))

    def set_vision_active_requests(self, count: int) -> None:
        self.vision_active_requests.set(count)

    def record_download_bytes(self, count: int) -> None:
        self.download_bytes.inc(count)

    def record_download(self, result: str) -> None:
        self.downloads.labels(result=result).inc()

    def set_vram_free(self, free_mb: int) -> None:
        self.vram_free.set(free_mb)

    def render(self) -> bytes:
        """Metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
