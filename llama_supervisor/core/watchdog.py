"""
Watchdog Module

Health monitor with automatic restart and exponential backoff for the
primary llama-server.

Components:
    - WatchdogState: Current phase of the watchdog
    - WatchdogStats: Counters exposed to status/metrics
    - Watchdog: Background monitor bound to one ProcessSupervisor

Monitoring Flow:
    1. Loop runs every check_interval_sec (default 5s)
    2. Ticks are skipped while the supervisor is in a transition
       (restart, model swap)
    3. Supervisor not running counts as a failure without an HTTP call,
       otherwise GET /health decides
    4. A healthy check resets failures and backoff
    5. max_failures consecutive failures trigger handle_server_down()

Restart Sequence:
    stop -> settle -> start(last model) -> wait until healthy

Backoff:
    The first restart runs immediately. Every later restart waits the
    current backoff first. A failed restart multiplies the backoff
    (capped at max_backoff_sec), a successful one resets it.

Usage:
    watchdog = Watchdog(supervisor, config.watchdog)
    watchdog.start()
    ...
    await watchdog.stop()
"""

import time
import inspect
import asyncio
import logging
from enum import Enum
from datetime import datetime
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, Union

import httpx

from .config import WatchdogConfig
from .errors import ModelNotFoundError, WatchdogError, WatchdogExhaustedError
from .supervisor import ProcessSupervisor
from ..services.metrics_service import MetricsService


logger = logging.getLogger(__name__)


RestartCallback = Callable[[str, int], Union[None, Awaitable[None]]]


class WatchdogState(str, Enum):
    MONITORING = "monitoring"
    FAILURE_COUNTING = "failure_counting"
    RESTARTING = "restarting"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class WatchdogStats:
    """
    Watchdog counters.

    Attributes:
        state: Current watchdog phase
        consecutive_failures: Failed checks since the last healthy one
        total_restarts: Every restart attempt (successful or not)
        successful_restarts: Restarts that ended with a healthy server
        failed_restarts: Restarts that failed
        current_backoff_sec: Wait before the next restart
        last_check: Time of the last health check
        last_failure: Time of the last failed check
        last_restart: Time of the last restart attempt
        last_error: Reason of the last failure
        last_restart_reason: Reason given for the last restart attempt
        start_time: When monitoring started
        is_healthy: Result of the last completed health check
    """
    state: WatchdogState = WatchdogState.STOPPED
    consecutive_failures: int = 0
    total_restarts: int = 0
    successful_restarts: int = 0
    failed_restarts: int = 0
    current_backoff_sec: float = 0.0
    last_check: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    last_restart: Optional[datetime] = None
    last_error: str = ""
    last_restart_reason: str = ""
    start_time: Optional[datetime] = None
    is_healthy: bool = False


class Watchdog:
    """
    Monitors the supervisor's llama-server and restarts it when it dies.

    Attributes:
        supervisor: ProcessSupervisor to watch
        config: Watchdog configuration
        running: Whether the monitor loop is active
        monitor_task: Background task running _monitor_loop
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        config: Optional[WatchdogConfig] = None,
        metrics: Optional[MetricsService] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.supervisor = supervisor
        self.config = config or WatchdogConfig()
        self.metrics = metrics
        self.http_client = http_client

        self._stats = WatchdogStats(current_backoff_sec=self.config.initial_backoff_sec)
        self._restart_callback: Optional[RestartCallback] = None
        self._restart_lock = asyncio.Lock()
        self.running = False
        self.monitor_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Start monitoring.

        Raises:
            WatchdogError: If the watchdog is already running
        """
        if self.running:
            raise WatchdogError("Watchdog is already running")

        self.running = True
        self._stats.state = WatchdogState.MONITORING
        self._stats.start_time = datetime.now()
        self.monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info(
            f"[Watchdog] Started (interval {self.config.check_interval_sec}s, "
            f"max failures {self.config.max_failures})"
        )

    async def stop(self) -> None:
        """Stop monitoring. Safe to call more than once."""
        self.running = False
        task = self.monitor_task
        self.monitor_task = None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._stats.state != WatchdogState.STOPPED:
            self._stats.state = WatchdogState.STOPPED
            logger.info("[Watchdog] Stopped")

    def set_restart_callback(self, callback: Optional[RestartCallback]) -> None:
        """Observer called with (reason, attempt) before each restart."""
        self._restart_callback = callback

    def stats(self) -> WatchdogStats:
        return replace(self._stats)

    # =========================================================================
    # Monitoring
    # =========================================================================

    async def _monitor_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.config.check_interval_sec)
            if not self.running:
                break

            try:
                await self.tick()
            except WatchdogExhaustedError as e:
                logger.error(f"[Watchdog] {e}")
                self.running = False
                self._stats.state = WatchdogState.STOPPED
                break
            except Exception as e:
                logger.exception(f"[Watchdog] Error in monitor loop: {e}")

    async def tick(self) -> None:
        """
        One monitoring step.

        Raises:
            WatchdogExhaustedError: If the restart limit is reached
        """
        if self.supervisor.in_transition:
            logger.debug("[Watchdog] Supervisor in transition, skipping check")
            return

        if not self.supervisor.is_running:
            healthy = False
            reason = "llama-server process is not running"
        else:
            healthy = await self.check_health()
            reason = "health check failed"

        self._stats.last_check = datetime.now()
        self._stats.is_healthy = healthy

        if healthy:
            if self._stats.consecutive_failures:
                logger.info("[Watchdog] Server healthy again")
            self._stats.consecutive_failures = 0
            self._stats.current_backoff_sec = self.config.initial_backoff_sec
            self._stats.state = WatchdogState.MONITORING
            return

        self._stats.consecutive_failures += 1
        self._stats.last_failure = datetime.now()
        self._stats.last_error = reason
        self._stats.state = WatchdogState.FAILURE_COUNTING
        logger.warning(
            f"[Watchdog] {reason} "
            f"({self._stats.consecutive_failures}/{self.config.max_failures})"
        )

        if self._stats.consecutive_failures >= self.config.max_failures:
            await self.handle_server_down(reason)

    async def check_health(self) -> bool:
        url = f"{self.supervisor.base_url}/health"
        try:
            if self.http_client is not None:
                response = await self.http_client.get(
                    url, timeout=self.config.health_timeout_sec
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, timeout=self.config.health_timeout_sec)
        except httpx.HTTPError as e:
            logger.debug(f"[Watchdog] Health request failed: {e}")
            return False
        return response.status_code == 200

    # =========================================================================
    # Restart
    # =========================================================================

    async def handle_server_down(self, reason: str) -> bool:
        """
        Restart the server after repeated failures.

        Returns:
            True if the server came back healthy

        Raises:
            WatchdogExhaustedError: If max_restarts is reached
        """
        max_restarts = self.config.max_restarts
        if max_restarts > 0 and self._stats.total_restarts >= max_restarts:
            self._stats.state = WatchdogState.STOPPED
            raise WatchdogExhaustedError(max_restarts)

        try:
            await self._restart(reason)
        except Exception as e:
            logger.error(f"[Watchdog] Restart failed: {e}")
            return False
        return True

    async def force_restart(self, reason: str) -> None:
        """
        Operator-triggered restart. Errors propagate to the caller.

        Raises:
            ModelNotFoundError: If no model was ever started
        """
        await self._restart(f"Manual: {reason}")

    async def _restart(self, reason: str) -> None:
        async with self._restart_lock:
            first_restart = self._stats.total_restarts == 0
            self._stats.total_restarts += 1
            attempt = self._stats.total_restarts
            self._stats.last_restart = datetime.now()
            self._stats.last_restart_reason = reason

            logger.warning(f"[Watchdog] Restart #{attempt}: {reason}")
            await self._notify(reason, attempt)

            if not first_restart and self._stats.current_backoff_sec > 0:
                self._stats.state = WatchdogState.BACKOFF
                logger.info(f"[Watchdog] Backoff {self._stats.current_backoff_sec:.1f}s")
                await asyncio.sleep(self._stats.current_backoff_sec)

            self._stats.state = WatchdogState.RESTARTING
            started = time.time()
            try:
                await self._restart_sequence()
            except Exception as e:
                self._stats.failed_restarts += 1
                self._stats.last_error = str(e)
                self._stats.current_backoff_sec = min(
                    self._stats.current_backoff_sec * self.config.backoff_multiplier,
                    self.config.max_backoff_sec
                )
                # Each attempt starts a new failure count
                self._stats.consecutive_failures = 0
                self._stats.state = WatchdogState.MONITORING
                if self.metrics:
                    self.metrics.record_restart(False)
                raise

            self._stats.successful_restarts += 1
            self._stats.consecutive_failures = 0
            self._stats.current_backoff_sec = self.config.initial_backoff_sec
            self._stats.state = WatchdogState.MONITORING
            if self.metrics:
                self.metrics.record_restart(True)
            logger.info(f"[Watchdog] Restart #{attempt} succeeded in {time.time() - started:.1f}s")

    async def _restart_sequence(self) -> None:
        model_path = self.supervisor.model_path
        if not model_path:
            raise ModelNotFoundError()

        async with self.supervisor.transition():
            await self.supervisor.stop()
            await asyncio.sleep(self.config.restart_settle_sec)
            await self.supervisor.start(model_path)
            await self.supervisor.wait_until_healthy(self.config.restart_ready_timeout_sec)

    async def _notify(self, reason: str, attempt: int) -> None:
        if self._restart_callback is None:
            return
        try:
            result = self._restart_callback(reason, attempt)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"[Watchdog] Restart callback failed: {e}")
