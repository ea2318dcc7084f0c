"""
Process Supervisor - llama-server Process Management

This module owns the primary llama-server child process: it decides how
the model fits into VRAM, builds the command line, starts and stops the
process and talks to it over HTTP.

Components:
    - SupervisorStatus: Snapshot returned by status()
    - VRAMStrategyInfo: Human-readable description of a VRAM strategy
    - ProcessSupervisor: Owner of one llama-server instance

ProcessSupervisor Responsibilities:
    - Binary resolution (configured path, data dir bin/, bundled bin/)
    - VRAM strategy before every start (smart swap, always clear,
      smart offload, manual)
    - Start llama-server with LD_LIBRARY_PATH pointing at its libraries
    - Readiness polling in the background (timeout is logged, not raised)
    - Escalating stop (SIGTERM -> SIGKILL) plus cleanup of any other
      process still listening on the port
    - OpenAI-compatible streaming chat through ChatClient

llama-server Command:
    llama-server -m <model> --port <n> --host <addr> -ngl <layers> -c <ctx>
                 [--jinja] [-t <threads>] [--no-mmap] [--mlock] [--mmproj <file>]

Locking:
    - lock: start() and stop() are mutually exclusive
    - transition(): held across a whole stop -> start sequence (restart,
      model swap, watchdog recovery) so two sequences never interleave

Usage:
    supervisor = ProcessSupervisor(config.supervisor, assets, VRAMService())
    await supervisor.start("/models/qwen2.5-7b-instruct-q4_k_m.gguf")
    await supervisor.wait_until_healthy(60)

    response = await supervisor.stream_chat(messages, on_chunk=print)

    await supervisor.stop()
"""

import os
import signal
import asyncio
import logging
import subprocess
from pathlib import Path
from dataclasses import dataclass, asdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx

from .config import SupervisorConfig, VRAMStrategy
from .errors import (
    AlreadyRunningError,
    BinaryNotFoundError,
    HealthTimeoutError,
    ModelNotFoundError,
    ServerNotReadyError,
    StartFailedError,
    VRAMInsufficientError,
)
from .estimator import estimate_model_vram, optimal_gpu_layers
from .logging_server import runner_log_path
from .runtime_assets import RuntimeAssets, discover_runtime_assets
from ..schemas.chat import ChatMessage, ChatResponse, SamplingParams, Tool
from ..services.chat_service import ChatClient, ChunkCallback
from ..services.metrics_service import MetricsService
from ..services.vram_service import VRAMService
from ..utils.classifiers import is_vision_model_name
from ..utils.message_adapters import MessageAdapter, PassthroughAdapter
from ..utils.model_files import (
    ModelFile,
    find_mmproj_for_model,
    find_model_by_name,
    largest_model,
    list_models,
)
from ..utils.polling import wait_until
from ..utils.process_utils import kill_port_owner, kill_processes_matching


logger = logging.getLogger(__name__)


# Constants
GRACEFUL_SHUTDOWN_TIMEOUT = 10.0
FORCE_KILL_TIMEOUT = 5.0
READY_POLL_INTERVAL = 0.5
ALWAYS_CLEAR_PAUSE = 1.0


@dataclass
class VRAMStrategyInfo:
    id: str
    name: str
    description: str
    recommended: bool = False


VRAM_STRATEGIES: List[VRAMStrategyInfo] = [
    VRAMStrategyInfo(
        id=VRAMStrategy.SMART_SWAP.value,
        name="Smart Swap",
        description="Frees VRAM only when the next model does not fit. "
                    "Best balance between speed and reliability.",
        recommended=True,
    ),
    VRAMStrategyInfo(
        id=VRAMStrategy.ALWAYS_CLEAR.value,
        name="Always Clear",
        description="Clears VRAM before every model load. Safest, with a short downtime.",
    ),
    VRAMStrategyInfo(
        id=VRAMStrategy.SMART_OFFLOAD.value,
        name="Smart Offload",
        description="Computes how many layers fit on the GPU and runs the rest "
                    "on the CPU. Lets large models run on small GPUs.",
    ),
    VRAMStrategyInfo(
        id=VRAMStrategy.MANUAL.value,
        name="Manual",
        description="No automatic VRAM management.",
    ),
]


@dataclass
class SupervisorStatus:
    """
    Snapshot of the primary llama-server.

    running is also True when a healthy server answers on the port
    without having been started by this supervisor.
    """
    running: bool
    healthy: bool
    port: int
    model_name: str
    model_path: str
    binary_path: str
    binary_found: bool
    context_size: int
    gpu_layers: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProcessSupervisor:
    """
    Owner of one llama-server child process.

    Attributes:
        config: Supervisor configuration (mutated by the setters)
        assets: llama-server binary and library directory
        vram: VRAM query service
        process: Running subprocess (None when stopped)
        running: True between a successful spawn and stop/exit
        model_name/model_path: Last started model
        lock: Serializes start() and stop()
    """

    def __init__(
        self,
        config: SupervisorConfig,
        assets: Optional[RuntimeAssets] = None,
        vram: Optional[VRAMService] = None,
        message_adapter: Optional[MessageAdapter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsService] = None
    ):
        """
        Initialize the supervisor.

        Args:
            config: Supervisor configuration
            assets: Discovered runtime assets (discovered lazily if None)
            vram: VRAM service (NVML on the configured GPU if None)
            message_adapter: Rewrites messages per model family
            http_client: Shared client for health and chat requests
            metrics: Optional Prometheus metrics
        """
        self.config = config
        self.assets = assets or RuntimeAssets(
            binary_path=config.binary_path,
            library_path=config.library_path,
        )
        self.vram = vram or VRAMService(config.gpu_device_index)
        self.message_adapter: MessageAdapter = message_adapter or PassthroughAdapter()
        self.http_client = http_client
        self.metrics = metrics

        self.process: Optional[asyncio.subprocess.Process] = None
        self.running = False
        self.model_name = ""
        self.model_path = ""
        self.mmproj_path = config.mmproj_path
        self.gpu_layers_in_use = config.gpu_layers

        self.lock = asyncio.Lock()
        self._transition_lock = asyncio.Lock()
        self._ready_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._log_handle = None
        self._stopping = False

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def base_url(self) -> str:
        return f"http://{self.config.host}:{self.config.port}"

    @property
    def is_running(self) -> bool:
        if self.process is None:
            return False
        return self.running and self.process.returncode is None

    @property
    def in_transition(self) -> bool:
        """True while a restart or swap sequence holds transition()."""
        return self._transition_lock.locked()

    @asynccontextmanager
    async def transition(self) -> AsyncIterator[None]:
        """Hold the sequence lock for a complete stop -> start sequence."""
        async with self._transition_lock:
            yield

    # =========================================================================
    # Start
    # =========================================================================

    def _resolve_binary(self) -> None:
        """Rediscover the binary if it is missing (e.g. installed after boot)."""
        if self.assets.found and Path(self.assets.binary_path).is_file():
            return

        data_dir = self.config.data_dir
        if not data_dir and self.config.models_dir:
            data_dir = str(Path(self.config.models_dir).parent)

        assets = discover_runtime_assets(
            data_dir=data_dir,
            binary_path=self.config.binary_path,
            library_path=self.config.library_path,
        )
        if not assets.found:
            raise BinaryNotFoundError(assets.searched)
        self.assets = assets

    async def start(self, model_path: str, gpu_layers: Optional[int] = None) -> None:
        """
        Start llama-server with a model.

        Readiness is polled in the background; a readiness timeout is
        logged only. Callers that need a ready server use
        wait_until_healthy().

        Args:
            model_path: .gguf file to serve
            gpu_layers: Layer count decided by the caller. If None the
                configured VRAM strategy runs first.

        Raises:
            BinaryNotFoundError: If no llama-server binary exists
            ModelNotFoundError: If the model file does not exist
            AlreadyRunningError: If a process is already running
            StartFailedError: If the OS fails to spawn the process
        """
        self._resolve_binary()

        if not model_path or not Path(model_path).is_file():
            raise ModelNotFoundError(model_path)

        if gpu_layers is None:
            gpu_layers = await self.apply_vram_strategy(model_path)

        async with self.lock:
            if self.is_running:
                raise AlreadyRunningError(self.model_name, self.config.port)

            command = self.build_command(model_path, gpu_layers)
            log_file = runner_log_path("llama-server", self.config.port)
            self._log_handle = open(log_file, "a", encoding="utf-8")

            logger.info(f"[Supervisor] Starting: {' '.join(command)}")

            try:
                self.process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=self._log_handle,
                    stderr=subprocess.STDOUT,
                    env=self.assets.environment(),
                    cwd=self.assets.library_path or None
                )
            except OSError as e:
                self._close_log_handle()
                self.process = None
                if self.metrics:
                    self.metrics.record_start(False)
                raise StartFailedError(model_path, str(e), is_retriable=False) from e

            self.running = True
            self.model_path = model_path
            self.model_name = Path(model_path).name
            self.gpu_layers_in_use = gpu_layers

            self._exit_task = asyncio.create_task(self._watch_exit(self.process))
            self._ready_task = asyncio.create_task(self._poll_readiness(self.model_name))

            if self.metrics:
                self.metrics.record_start(True)

            logger.info(
                f"[Supervisor] llama-server started (PID {self.process.pid}, "
                f"port {self.config.port}, model {self.model_name}, ngl {gpu_layers})"
            )

    def build_command(self, model_path: str, gpu_layers: int) -> List[str]:
        """Build the llama-server command line."""
        config = self.config
        command = [
            self.assets.binary_path,
            "-m", model_path,
            "--port", str(config.port),
            "--host", config.host,
            "-ngl", str(gpu_layers),
            "-c", str(config.context_size),
        ]

        if config.use_jinja:
            command.append("--jinja")

        if config.threads > 0:
            command.extend(["-t", str(config.threads)])

        if not config.use_mmap:
            command.append("--no-mmap")

        if config.use_mlock:
            command.append("--mlock")

        mmproj = self._resolve_mmproj(model_path)
        if mmproj:
            command.extend(["--mmproj", mmproj])

        return command

    def _resolve_mmproj(self, model_path: str) -> Optional[str]:
        """Configured projector, or one found next to a vision model."""
        if self.mmproj_path:
            if Path(self.mmproj_path).is_file():
                return self.mmproj_path
            logger.warning(f"[Supervisor] mmproj not found: {self.mmproj_path}")
            return None

        if is_vision_model_name(Path(model_path).name):
            found = find_mmproj_for_model(model_path, self.config.models_dir)
            if found:
                logger.info(f"[Supervisor] Vision model, using mmproj {found}")
                return found
            logger.warning(
                f"[Supervisor] Vision model {Path(model_path).name} without mmproj, "
                "images will not work"
            )
        return None

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        """Clear the running flag when the process exits on its own."""
        returncode = await process.wait()
        if self.process is not process:
            return

        self.running = False
        if not self._stopping:
            logger.warning(
                f"[Supervisor] llama-server exited unexpectedly (code {returncode}). "
                f"See {runner_log_path('llama-server', self.config.port)}"
            )
            self._close_log_handle()
            if self.metrics:
                self.metrics.record_stop()

    async def _poll_readiness(self, model_name: str) -> None:
        ready = await wait_until(
            lambda: self._ready_or_dead(),
            interval=READY_POLL_INTERVAL,
            timeout=self.config.ready_timeout_sec
        )
        if not self.is_running:
            return
        if ready:
            logger.info(f"[Supervisor] READY at {self.base_url} ({model_name})")
        else:
            logger.warning(
                f"[Supervisor] {model_name} not healthy after "
                f"{self.config.ready_timeout_sec:.0f}s, it may still come up"
            )

    async def _ready_or_dead(self) -> bool:
        if not self.is_running:
            return True
        return await self.is_healthy()

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(self) -> None:
        """
        Stop llama-server.

        Terminates the own process (SIGTERM, then SIGKILL), kills any other
        process still serving on the port, and waits briefly so the GPU
        driver can reclaim the memory.
        """
        async with self.lock:
            await self._stop_process()

            if kill_port_owner(self.config.port):
                logger.warning(
                    f"[Supervisor] Killed external process(es) holding port {self.config.port}"
                )
            elif await self.is_healthy():
                logger.warning(
                    f"[Supervisor] Port {self.config.port} still answers, "
                    "killing external llama-server"
                )
                kill_processes_matching("llama-server")

            if self.config.stop_settle_sec > 0:
                await asyncio.sleep(self.config.stop_settle_sec)

    async def _stop_process(self) -> None:
        current = asyncio.current_task()
        if self._ready_task and self._ready_task is not current and not self._ready_task.done():
            self._ready_task.cancel()
        self._ready_task = None

        process = self.process
        if process is None:
            self.running = False
            return

        pid = process.pid
        self._stopping = True
        try:
            if process.returncode is None:
                logger.info(f"[Supervisor] Stopping llama-server (PID {pid})")
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=GRACEFUL_SHUTDOWN_TIMEOUT)
                    logger.info("[Supervisor] Stopped gracefully")
                except asyncio.TimeoutError:
                    await self._force_kill(process)
        except ProcessLookupError:
            logger.info("[Supervisor] Process already dead")
        finally:
            self._stopping = False
            self.process = None
            self.running = False
            if self._exit_task and not self._exit_task.done():
                self._exit_task.cancel()
            self._exit_task = None
            self._close_log_handle()
            if self.metrics:
                self.metrics.record_stop()

    async def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        logger.warning("[Supervisor] SIGTERM timeout. Escalating to SIGKILL")
        try:
            process.kill()
            await asyncio.wait_for(process.wait(), timeout=FORCE_KILL_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"[Supervisor] SIGKILL timeout. Using os.kill on PID {process.pid}")
            try:
                os.kill(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    def _close_log_handle(self) -> None:
        if self._log_handle and not self._log_handle.closed:
            self._log_handle.close()
        self._log_handle = None

    # =========================================================================
    # VRAM strategy
    # =========================================================================

    async def apply_vram_strategy(self, model_path: str) -> int:
        """
        Run the configured VRAM strategy for a model.

        Returns:
            GPU layer count to start the model with
        """
        required = estimate_model_vram(model_path)
        layers = self.config.gpu_layers
        strategy = self.config.vram_strategy

        logger.info(
            f"[Supervisor] VRAM strategy {strategy.value}: "
            f"{Path(model_path).name} needs ~{required} MB"
        )

        if strategy == VRAMStrategy.ALWAYS_CLEAR:
            await self.stop()
            await asyncio.sleep(ALWAYS_CLEAR_PAUSE)
            await self.vram.clear_vram(self.config.clear_settle_sec)
        elif strategy == VRAMStrategy.SMART_OFFLOAD:
            layers = self.calculate_optimal_gpu_layers(model_path, required)
        elif strategy == VRAMStrategy.MANUAL:
            logger.debug("[Supervisor] Manual VRAM management, nothing to do")
        else:
            try:
                await self.ensure_vram_available(required)
            except VRAMInsufficientError as e:
                logger.warning(f"[Supervisor] {e}. Trying anyway")

        return layers

    async def ensure_vram_available(self, required_mb: int) -> None:
        """
        Free VRAM if less than required_mb is available.

        Stops the own process and kills other inference processes on the
        GPU, then checks again. An unknown budget is treated as enough.

        Raises:
            VRAMInsufficientError: If VRAM is still short after clearing
        """
        budget = self.vram.get_budget()
        if not budget.available:
            logger.debug("[Supervisor] VRAM unknown, skipping check")
            return
        if self.metrics:
            self.metrics.set_vram_free(budget.free_mb)

        if budget.free_mb >= required_mb:
            logger.info(
                f"[Supervisor] VRAM OK: {budget.free_mb} MB free, {required_mb} MB needed"
            )
            return

        logger.info(
            f"[Supervisor] VRAM short: {budget.free_mb} MB free, "
            f"{required_mb} MB needed. Clearing"
        )
        if self.is_running:
            await self.stop()
        await self.vram.clear_vram(self.config.clear_settle_sec)

        budget = self.vram.get_budget()
        if budget.available and budget.free_mb < required_mb:
            raise VRAMInsufficientError(required_mb, budget.free_mb)

    def calculate_optimal_gpu_layers(self, model_path: str, required_mb: int) -> int:
        """GPU layers for partial offload, keeping vram_reserve_mb free."""
        budget = self.vram.get_budget()
        if not budget.available:
            return self.config.gpu_layers

        available = max(0, budget.free_mb - self.config.vram_reserve_mb)
        layers = optimal_gpu_layers(model_path, required_mb, available)
        logger.info(
            f"[Supervisor] Smart offload: {available} MB usable "
            f"(reserve {self.config.vram_reserve_mb} MB), {required_mb} MB needed "
            f"-> ngl {layers}"
        )
        return layers

    # =========================================================================
    # Health
    # =========================================================================

    async def _get(self, url: str, timeout: float) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.get(url, timeout=timeout)
        async with httpx.AsyncClient() as client:
            return await client.get(url, timeout=timeout)

    async def is_healthy(self) -> bool:
        """GET /health with a short timeout."""
        try:
            response = await self._get(
                f"{self.base_url}/health",
                timeout=self.config.health_timeout_sec
            )
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def wait_until_healthy(self, timeout: float) -> None:
        """
        Block until /health answers 200.

        Raises:
            HealthTimeoutError: If the server is not ready within timeout
        """
        ready = await wait_until(self.is_healthy, READY_POLL_INTERVAL, timeout)
        if not ready:
            raise HealthTimeoutError(f"{self.base_url}/health", timeout)

    async def status(self) -> SupervisorStatus:
        healthy = await self.is_healthy()
        return SupervisorStatus(
            running=self.is_running or healthy,
            healthy=healthy,
            port=self.config.port,
            model_name=self.model_name,
            model_path=self.model_path,
            binary_path=self.assets.binary_path,
            binary_found=self.assets.found,
            context_size=self.config.context_size,
            gpu_layers=self.gpu_layers_in_use,
        )

    # =========================================================================
    # Restart / switch
    # =========================================================================

    async def restart(self) -> None:
        """
        Restart llama-server with the current model.

        Raises:
            ModelNotFoundError: If no model was ever started
        """
        if not self.model_path:
            raise ModelNotFoundError()
        await self.switch_model(self.model_path)

    async def switch_model(self, model_path: str) -> None:
        """Stop, pause, and start with another model."""
        async with self.transition():
            logger.info(f"[Supervisor] Switching to {Path(model_path).name}")
            await self.stop()
            await asyncio.sleep(self.config.restart_delay_sec)
            await self.start(model_path)

    async def restart_with_context_size(self, context_size: int) -> int:
        """
        Restart with a new context window.

        Returns:
            Estimated seconds until the server is ready (0 if unchanged)
        """
        old_size = self.config.context_size
        if old_size == context_size:
            logger.info(f"[Supervisor] Context size unchanged ({old_size})")
            return 0

        logger.info(f"[Supervisor] Context {old_size} -> {context_size}, restarting")
        self.config.context_size = context_size
        try:
            await self.restart()
        except Exception:
            self.config.context_size = old_size
            raise

        if context_size > 65536:
            return 12
        if context_size > 32768:
            return 8
        return 5

    async def switch_to_model_with_fallback(self, name: str) -> Tuple[bool, bool, str]:
        """
        Switch to a model by (fuzzy) name, falling back to the largest model.

        Returns:
            (switched, used_fallback, model_name)
        """
        if not name:
            return False, False, ""

        used_fallback = False
        try:
            path = find_model_by_name(self.config.models_dir, name)
        except ModelNotFoundError:
            fallback = largest_model(self.config.models_dir)
            logger.warning(
                f"[Supervisor] Model '{name}' not found, falling back to {fallback.name}"
            )
            path = fallback.path
            used_fallback = True

        model_name = Path(path).name
        if self.is_running and self.model_path == path:
            return False, used_fallback, model_name

        await self.switch_model(path)
        return True, used_fallback, model_name

    # =========================================================================
    # Chat
    # =========================================================================

    def chat_client(self) -> ChatClient:
        return ChatClient(
            self.base_url,
            timeout=self.config.chat_timeout_sec,
            http_client=self.http_client
        )

    async def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        on_chunk: Optional[ChunkCallback] = None,
        params: Optional[SamplingParams] = None,
        tools: Optional[Sequence[Tool]] = None
    ) -> ChatResponse:
        """
        Stream a chat completion from the running model.

        Raises:
            ServerNotReadyError: If llama-server is not running and healthy
            InferenceError: If the request fails
        """
        if not self.is_running or not await self.is_healthy():
            raise ServerNotReadyError()

        adapted = self.message_adapter.adapt(self.model_name, list(messages))
        return await self.chat_client().stream_chat(
            adapted,
            on_chunk=on_chunk,
            params=params,
            tools=tools,
        )

    async def quick_chat(
        self,
        system_prompt: str,
        user_message: str,
        timeout: Optional[float] = None
    ) -> str:
        """One-shot question, returns the full answer text."""
        messages = [
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=user_message),
        ]
        request = self.stream_chat(messages)
        if timeout:
            response = await asyncio.wait_for(request, timeout=timeout)
        else:
            response = await request
        return response.content

    # =========================================================================
    # Models on disk
    # =========================================================================

    def list_models(self) -> List[ModelFile]:
        return list_models(self.config.models_dir)

    def find_model(self, name: str) -> str:
        return find_model_by_name(self.config.models_dir, name)

    def largest_model(self) -> ModelFile:
        return largest_model(self.config.models_dir)

    # =========================================================================
    # Settings
    # =========================================================================

    def set_vram_strategy(self, strategy: str) -> None:
        try:
            self.config.vram_strategy = VRAMStrategy(strategy)
        except ValueError:
            logger.warning(f"[Supervisor] Unknown VRAM strategy '{strategy}', using smart_swap")
            self.config.vram_strategy = VRAMStrategy.SMART_SWAP
        logger.info(f"[Supervisor] VRAM strategy: {self.config.vram_strategy.value}")

    def set_vram_reserve(self, reserve_mb: int) -> None:
        self.config.vram_reserve_mb = max(0, reserve_mb)

    def set_use_mmap(self, enabled: bool) -> None:
        self.config.use_mmap = enabled

    def set_use_mlock(self, enabled: bool) -> None:
        self.config.use_mlock = enabled

    def set_port(self, port: int) -> None:
        self.config.port = port

    def set_context_size(self, size: int) -> None:
        self.config.context_size = size

    def set_gpu_layers(self, layers: int) -> None:
        self.config.gpu_layers = layers

    def set_mmproj_path(self, path: str) -> None:
        self.mmproj_path = path

    def set_message_adapter(self, adapter: MessageAdapter) -> None:
        self.message_adapter = adapter

    def vram_settings(self) -> Dict[str, Any]:
        """Strategy, reserve, current VRAM and the strategy catalog."""
        return {
            "strategy": self.config.vram_strategy.value,
            "reserve_mb": self.config.vram_reserve_mb,
            "current_vram": asdict(self.vram.get_budget()),
            "available_strategies": [asdict(s) for s in VRAM_STRATEGIES],
            "use_mmap": self.config.use_mmap,
            "use_mlock": self.config.use_mlock,
        }
