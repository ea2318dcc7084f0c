"""
Application Startup Module

Builds every component in dependency order and brings the primary model
up.

Initialization Order:
    1. Configuration loading
    2. HTTP client
    3. Metrics and VRAM service
    4. Runtime asset discovery (llama-server binary, libraries)
    5. Process supervisor
    6. Downloader (removes leftovers of broken downloads)
    7. Model swap manager (role auto-detection)
    8. Vision server
    9. Load the chat model
    10. Start the watchdog
    11. Start background tasks (VRAM sampling)

Usage:
    from llama_supervisor.lifecycle.startup import startup_handler

    container = await startup_handler(config_path="config.json")
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx

from .dependencies import AppContainer, get_container
from ..core.config import AppConfig, load_config
from ..core.errors import SupervisorError
from ..core.model_swap import ModelRole, ModelSwapManager
from ..core.runtime_assets import discover_runtime_assets
from ..core.supervisor import ProcessSupervisor
from ..core.vision_server import VisionServer
from ..core.watchdog import Watchdog
from ..services.download_service import ArtifactDownloader
from ..services.metrics_service import MetricsService
from ..services.vram_service import VRAMService


logger = logging.getLogger(__name__)


VRAM_SAMPLE_INTERVAL = 10.0


async def startup_handler(
    config: Optional[AppConfig] = None,
    config_path: Optional[str] = None,
    load_model: bool = True
) -> AppContainer:
    """
    Initialize all components.

    Args:
        config: Ready configuration (loaded from config_path if None)
        config_path: JSON config file
        load_model: Load the chat model and start the watchdog

    Returns:
        The populated global AppContainer

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    container = get_container()

    try:
        # Step 1: Configuration
        if config is None:
            logger.info(f"Loading config from: {config_path or 'default location'}")
            config = load_config(config_path)
        container.config = config

        # Step 2: HTTP client
        logger.info("Initializing HTTP client")
        container.http_client = _create_http_client(config)

        # Step 3: Metrics and VRAM
        container.metrics_service = MetricsService()
        container.vram_service = VRAMService(config.supervisor.gpu_device_index)

        # Step 4: Runtime assets
        logger.info("Discovering llama-server")
        container.assets = discover_runtime_assets(
            data_dir=config.supervisor.data_dir,
            binary_path=config.supervisor.binary_path,
            library_path=config.supervisor.library_path,
        )

        # Step 5: Supervisor
        logger.info("Initializing ProcessSupervisor")
        container.supervisor = ProcessSupervisor(
            config.supervisor,
            assets=container.assets,
            vram=container.vram_service,
            http_client=container.http_client,
            metrics=container.metrics_service
        )

        # Step 6: Downloader
        logger.info("Initializing ArtifactDownloader")
        container.downloader = ArtifactDownloader(
            config.supervisor.models_dir,
            config.download,
            metrics=container.metrics_service
        )
        container.downloader.cleanup_incomplete_downloads()

        # Step 7: Swap manager
        logger.info("Initializing ModelSwapManager")
        container.swap_manager = ModelSwapManager(
            container.supervisor,
            config.swap,
            metrics=container.metrics_service
        )
        if config.swap.auto_detect:
            container.swap_manager.auto_detect_models(config.supervisor.models_dir)
        if config.supervisor.model_path:
            container.swap_manager.set_chat_model(config.supervisor.model_path)

        # Step 8: Vision server
        logger.info("Initializing VisionServer")
        _fill_vision_model(config, container.swap_manager)
        container.vision_server = VisionServer(
            config.vision,
            assets=container.assets,
            vram=container.vram_service,
            http_client=container.http_client,
            metrics=container.metrics_service
        )

        if load_model:
            # Step 9: Primary model
            await _load_chat_model(container)

            # Step 10: Watchdog
            container.watchdog = Watchdog(
                container.supervisor,
                config.watchdog,
                metrics=container.metrics_service,
                http_client=container.http_client
            )
            if config.watchdog.enabled:
                logger.info("Starting watchdog")
                container.watchdog.start()

            # Step 11: Background tasks
            _start_background_tasks(container)

        logger.info("Startup complete")
        return container

    except Exception as e:
        logger.exception(f"FATAL: Initialization failed: {e}")
        await _emergency_cleanup(container)
        raise


def _create_http_client(config: AppConfig) -> httpx.AsyncClient:
    """HTTP client for local llama-server connections."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=2.0,  # Local connections are fast
            read=config.supervisor.chat_timeout_sec,
            write=5.0,
            pool=5.0
        ),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=50)
    )


def _fill_vision_model(config: AppConfig, swap_manager: ModelSwapManager) -> None:
    """Use the detected vision model when none is configured for the vision server."""
    if config.vision.model_path:
        return
    info = swap_manager.vision_model_info()
    if info["available"]:
        config.vision.model_path = info["model_path"]
        config.vision.mmproj_path = info["mmproj_path"]
        logger.info(f"Vision server will use {Path(info['model_path']).name}")


async def _load_chat_model(container: AppContainer) -> None:
    chat_model = container.swap_manager.role_models.get(ModelRole.CHAT) or ""
    if not chat_model:
        logger.warning("No chat model configured or found, llama-server not started")
        return

    try:
        seconds = await container.swap_manager.ensure_chat_model()
        logger.info(f"Chat model ready after {seconds:.1f}s")
    except SupervisorError as e:
        logger.error(f"Could not load chat model {Path(chat_model).name}: {e}")


def _start_background_tasks(container: AppContainer) -> None:
    task = asyncio.create_task(_sample_vram(container))
    container.background_tasks.append(task)
    logger.info(f"Started {len(container.background_tasks)} background tasks")


async def _sample_vram(container: AppContainer) -> None:
    """Publish free VRAM to the metrics until shutdown."""
    while not container.shutdown_event.is_set():
        budget = container.vram_service.get_budget()
        if budget.available:
            container.metrics_service.set_vram_free(budget.free_mb)
        try:
            await asyncio.wait_for(container.shutdown_event.wait(), VRAM_SAMPLE_INTERVAL)
        except asyncio.TimeoutError:
            continue


async def _emergency_cleanup(container: AppContainer) -> None:
    """Cleanup on startup failure."""
    logger.info("Performing emergency cleanup...")

    if container.watchdog:
        await container.watchdog.stop()

    if container.supervisor and container.supervisor.is_running:
        try:
            await container.supervisor.stop()
        except Exception as e:
            logger.warning(f"Error stopping llama-server: {e}")

    if container.vram_service:
        container.vram_service.shutdown()

    if container.http_client:
        await container.http_client.aclose()

    logger.info("Emergency cleanup complete")
