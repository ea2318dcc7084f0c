"""
Application Dependencies Module

Holds every component created at startup in one container so the CLI,
the shutdown handler and tests reach them through the same object.

Components:
    - AppContainer: All initialized components plus shutdown state
    - get_container / set_container: Process-wide container access

Usage:
    from llama_supervisor.lifecycle.dependencies import get_container

    container = get_container()
    status = await container.supervisor.status()
"""

import httpx
import asyncio
import logging
from typing import List, Optional
from dataclasses import dataclass, field

from ..core.config import AppConfig
from ..core.model_swap import ModelSwapManager
from ..core.runtime_assets import RuntimeAssets
from ..core.supervisor import ProcessSupervisor
from ..core.vision_server import VisionServer
from ..core.watchdog import Watchdog
from ..services.download_service import ArtifactDownloader
from ..services.metrics_service import MetricsService
from ..services.vram_service import VRAMService


logger = logging.getLogger(__name__)


@dataclass
class AppContainer:
    """
    Container for application components.

    Attributes:
        config: Application configuration
        assets: Discovered llama-server binary and libraries
        vram_service: NVML-backed VRAM queries
        metrics_service: Prometheus metrics
        http_client: Shared client for health checks and inference
        supervisor: Primary llama-server owner
        watchdog: Health monitor with auto-restart
        swap_manager: Chat/vision/coder role swaps
        vision_server: On-demand vision llama-server
        downloader: Model downloads
        shutdown_event: Set when shutdown starts
        background_tasks: Tasks cancelled at shutdown
    """
    config: Optional[AppConfig] = None
    assets: Optional[RuntimeAssets] = None
    vram_service: Optional[VRAMService] = None
    metrics_service: Optional[MetricsService] = None
    http_client: Optional[httpx.AsyncClient] = None
    supervisor: Optional[ProcessSupervisor] = None
    watchdog: Optional[Watchdog] = None
    swap_manager: Optional[ModelSwapManager] = None
    vision_server: Optional[VisionServer] = None
    downloader: Optional[ArtifactDownloader] = None
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    background_tasks: List[asyncio.Task] = field(default_factory=list)


# Global container instance
_container: Optional[AppContainer] = None


def get_container() -> AppContainer:
    """Get the global container instance."""
    global _container
    if _container is None:
        _container = AppContainer()
    return _container


def set_container(container: Optional[AppContainer]) -> None:
    """Set (or reset with None) the global container instance."""
    global _container
    _container = container


def is_shutting_down() -> bool:
    return get_container().shutdown_event.is_set()
