"""
Application Shutdown Module

Stops all components in reverse order of their startup.

Shutdown Order:
    1. Signal shutdown event
    2. Cancel background tasks
    3. Stop the watchdog (so it does not restart what we stop)
    4. Stop the vision server
    5. Stop the primary llama-server (force kill on timeout)
    6. Close the HTTP client
    7. Shutdown NVML

Usage:
    from llama_supervisor.lifecycle.shutdown import shutdown_handler

    await shutdown_handler()
"""

import asyncio
import logging
from typing import Optional

from .dependencies import AppContainer, get_container


logger = logging.getLogger(__name__)


# Timeout constants
TASK_CANCEL_TIMEOUT = 2.0
WATCHDOG_STOP_TIMEOUT = 5.0
SERVER_STOP_TIMEOUT = 15.0
HTTP_CLIENT_TIMEOUT = 5.0


async def shutdown_handler(container: Optional[AppContainer] = None) -> None:
    """Gracefully shutdown all components."""
    container = container or get_container()

    logger.info("Shutdown initiated")

    # Step 1: Signal shutdown
    container.shutdown_event.set()

    # Step 2: Background tasks
    await _cancel_background_tasks(container)

    # Step 3: Watchdog
    await _stop_watchdog(container)

    # Step 4: Vision server
    await _stop_vision_server(container)

    # Step 5: Primary llama-server
    await _stop_supervisor(container)

    # Step 6: HTTP client
    await _close_http_client(container)

    # Step 7: NVML
    if container.vram_service:
        container.vram_service.shutdown()

    logger.info("Shutdown complete")


async def _cancel_background_tasks(container: AppContainer) -> None:
    task_count = len(container.background_tasks)
    if not task_count:
        return

    logger.info(f"Cancelling {task_count} background tasks")

    for task in container.background_tasks:
        if task.done():
            continue

        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=TASK_CANCEL_TIMEOUT)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
    container.background_tasks.clear()


async def _stop_watchdog(container: AppContainer) -> None:
    if not container.watchdog:
        return

    logger.info("Stopping watchdog")
    try:
        await asyncio.wait_for(container.watchdog.stop(), timeout=WATCHDOG_STOP_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Watchdog stop timeout")


async def _stop_vision_server(container: AppContainer) -> None:
    if not container.vision_server or not container.vision_server.is_running:
        return

    logger.info("Stopping vision server")
    try:
        await asyncio.wait_for(container.vision_server.stop(), timeout=SERVER_STOP_TIMEOUT)
    except asyncio.TimeoutError:
        logger.error("Vision server stop timeout")


async def _stop_supervisor(container: AppContainer) -> None:
    supervisor = container.supervisor
    if not supervisor or not supervisor.is_running:
        return

    logger.info("Stopping llama-server")
    try:
        await asyncio.wait_for(supervisor.stop(), timeout=SERVER_STOP_TIMEOUT)
        logger.info("llama-server stopped")
    except asyncio.TimeoutError:
        logger.error("Timeout stopping llama-server. Force killing...")
        if supervisor.process and supervisor.process.returncode is None:
            try:
                supervisor.process.kill()
            except ProcessLookupError:
                pass


async def _close_http_client(container: AppContainer) -> None:
    if not container.http_client:
        return

    try:
        await asyncio.wait_for(container.http_client.aclose(), timeout=HTTP_CLIENT_TIMEOUT)
        logger.info("HTTP client closed")
    except asyncio.TimeoutError:
        logger.warning("HTTP client close timeout")
