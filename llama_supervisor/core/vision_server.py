"""
Vision Server Module

A second llama-server dedicated to image analysis that runs only while it
is needed. It is started lazily by the first request and stopped again
after idle_timeout_sec without requests, so its VRAM is free for the
primary model most of the time.

Components:
    - VisionState: stopped / starting / ready / stopping
    - VisionServerStatus: Snapshot returned by status()
    - VisionServer: On-demand subprocess with idle eviction

State Machine:
    stopped -> starting        start()
    starting -> ready          /health answered 200
    starting -> stopped        readiness timeout or process exit
    ready -> stopping -> stopped   stop() or idle timeout
    ready -> stopped           process exit

Idle Eviction:
    The idle timer is re-armed by ensure_running() and after every
    request. When it fires while requests are still in flight it re-arms
    instead of stopping, so a long CPU analysis is never killed.

VRAM Guard:
    If the GPU does not have the estimated model size plus a safety margin
    free, the server runs CPU-only (-ngl 0, no flash attention, no CUDA
    devices visible).

Usage:
    vision = VisionServer(config.vision, assets, vram)
    result = await vision.analyze_image(image_b64)
    print(result.description, result.document_type)
"""

import time
import asyncio
import logging
import subprocess
from enum import Enum
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import httpx

from .config import VisionServerConfig
from .errors import (
    BinaryNotFoundError,
    HealthTimeoutError,
    ModelNotFoundError,
    StartFailedError,
    VisionDisabledError,
)
from .estimator import estimate_model_vram
from .events import EventBus, VisionStateChanged
from .logging_server import runner_log_path
from .runtime_assets import RuntimeAssets, discover_runtime_assets
from ..schemas.chat import ChatMessage, SamplingParams, VisionAnalysis, image_part, text_part
from ..services.chat_service import ChatClient
from ..services.metrics_service import MetricsService
from ..services.vram_service import ResourceBudget, VRAMService
from ..utils.classifiers import DocumentClassifier
from ..utils.polling import wait_until


logger = logging.getLogger(__name__)


HEALTH_CHECK_TIMEOUT = 5.0

DEFAULT_ANALYSIS_PROMPT = """Analyze this image in detail.

If it is a document (letter, invoice, form, etc.):
1. Extract ALL readable text verbatim
2. Identify the document type (invoice, letter, contract, form, etc.)
3. Extract key data (dates, amounts, names, addresses)
4. Describe visual elements (logos, stamps, signatures)

If it is a photo or graphic:
1. Describe what is shown
2. Identify objects and people
3. Describe the scene and context

Answer format:
- Start with a short summary
- Then list all details"""


class VisionState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"


@dataclass
class VisionServerStatus:
    running: bool
    starting: bool
    ready: bool
    model_name: str
    port: int
    last_used: Optional[datetime]
    idle_timeout_sec: float
    seconds_until_stop: Optional[float]
    active_requests: int
    cpu_only: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VisionServer:
    """
    On-demand llama-server for multimodal requests.

    Attributes:
        config: Vision server configuration (mutated by the setters)
        assets: llama-server binary and libraries
        state: Current VisionState
        active_requests: In-flight analyze_image() calls
        last_used: Time of the last request or ensure_running()
        cpu_only: True if the running instance was started without GPU
        events: EventBus receiving VisionStateChanged
        lock: Guards state, counter and idle timer
    """

    def __init__(
        self,
        config: VisionServerConfig,
        assets: Optional[RuntimeAssets] = None,
        vram: Optional[VRAMService] = None,
        events: Optional[EventBus] = None,
        document_classifier: Optional[DocumentClassifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsService] = None
    ):
        self.config = config
        self.assets = assets or RuntimeAssets()
        self.vram = vram
        self.events = events or EventBus()
        self.document_classifier = document_classifier or DocumentClassifier()
        self.http_client = http_client
        self.metrics = metrics

        self.state = VisionState.STOPPED
        self.process: Optional[asyncio.subprocess.Process] = None
        self.model_name = Path(config.model_path).name if config.model_path else ""
        self.last_used: Optional[datetime] = None
        self._last_used_mono: Optional[float] = None
        self.active_requests = 0
        self.cpu_only = False

        self.lock = asyncio.Lock()
        self._idle_task: Optional[asyncio.Task] = None
        self._ready_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._log_handle = None

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def is_running(self) -> bool:
        return self.state in (VisionState.STARTING, VisionState.READY)

    @property
    def is_ready(self) -> bool:
        return self.state == VisionState.READY

    # =========================================================================
    # State
    # =========================================================================

    async def _set_state(self, new_state: VisionState) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        logger.info(f"[Vision] {old_state.value} -> {new_state.value}")
        if self.metrics:
            self.metrics.set_vision_state(new_state.value)
        await self.events.emit(VisionStateChanged(old_state.value, new_state.value))

    def _touch(self) -> None:
        self.last_used = datetime.now()
        self._last_used_mono = time.monotonic()

    def touch_last_used(self) -> None:
        self._touch()

    # =========================================================================
    # Start
    # =========================================================================

    async def ensure_running(self) -> None:
        """
        Start the server if needed and wait until it is ready.

        Raises:
            VisionDisabledError: If the vision server is disabled
            HealthTimeoutError: If it does not become ready in time
            StartFailedError: If the process dies during startup
        """
        if not self.config.enabled:
            raise VisionDisabledError()

        async with self.lock:
            if self.state == VisionState.READY:
                self._touch()
                self._arm_idle_timer()
                return
            if self.state == VisionState.STOPPED:
                await self._start_locked()

        await wait_until(
            lambda: self.state != VisionState.STARTING,
            interval=self.config.poll_interval_sec,
            timeout=self.config.ready_timeout_sec
        )

        async with self.lock:
            if self.state == VisionState.READY:
                self._touch()
                self._arm_idle_timer()
                return
            if self.state == VisionState.STARTING:
                raise HealthTimeoutError(f"{self.base_url}/health", self.config.ready_timeout_sec)
            raise StartFailedError(
                self.config.model_path,
                "vision server stopped during startup",
                is_retriable=True
            )

    async def start(self) -> None:
        """Start the process without waiting for readiness."""
        async with self.lock:
            if self.state in (VisionState.STARTING, VisionState.READY):
                return
            await self._start_locked()

    def _resolve_binary(self) -> None:
        if self.assets.found and Path(self.assets.binary_path).is_file():
            return
        assets = discover_runtime_assets(
            binary_path=self.assets.binary_path,
            library_path=self.assets.library_path,
            backend=self.config.backend
        )
        if not assets.found:
            raise BinaryNotFoundError(assets.searched)
        self.assets = assets

    def _budget(self) -> ResourceBudget:
        if self.vram is None:
            return ResourceBudget.unknown()
        return self.vram.get_budget()

    async def _start_locked(self) -> None:
        if not self.config.enabled:
            raise VisionDisabledError()

        model_path = self.config.model_path
        if not model_path or not Path(model_path).is_file():
            raise ModelNotFoundError(model_path, role="vision")

        self._resolve_binary()

        required = estimate_model_vram(model_path)
        budget = self._budget()
        cpu_only = (
            budget.available
            and budget.free_mb < required + self.config.vram_safety_margin_mb
        )
        if cpu_only:
            logger.warning(
                f"[Vision] Only {budget.free_mb} MB VRAM free, {required} MB "
                f"+ {self.config.vram_safety_margin_mb} MB margin needed. Running CPU-only"
            )

        gpu_layers = 0 if cpu_only else self.config.gpu_layers
        command = self.build_command(gpu_layers, cpu_only)

        env = self.assets.environment()
        if cpu_only:
            env["CUDA_VISIBLE_DEVICES"] = ""

        log_file = runner_log_path("vision-server", self.config.port)
        self._log_handle = open(log_file, "a", encoding="utf-8")

        logger.info(f"[Vision] Starting: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=self._log_handle,
                stderr=subprocess.STDOUT,
                env=env,
                cwd=self.assets.library_path or None
            )
        except OSError as e:
            self._close_log_handle()
            raise StartFailedError(model_path, str(e), is_retriable=False) from e

        self.process = process
        self.cpu_only = cpu_only
        self.model_name = Path(model_path).name
        await self._set_state(VisionState.STARTING)

        self._exit_task = asyncio.create_task(self._watch_exit(process))
        self._ready_task = asyncio.create_task(self._poll_readiness(process))

    def build_command(self, gpu_layers: int, cpu_only: bool = False) -> List[str]:
        config = self.config
        command = [
            self.assets.binary_path,
            "--model", config.model_path,
            "--port", str(config.port),
            "--host", config.host,
            "-ngl", str(gpu_layers),
            "-c", str(config.context_size),
        ]

        if config.flash_attention and not cpu_only:
            command.append("--flash-attn")

        if config.main_gpu >= 0:
            command.extend(["--main-gpu", str(config.main_gpu)])

        if config.mmproj_path:
            if Path(config.mmproj_path).is_file():
                command.extend(["--mmproj", config.mmproj_path])
            else:
                logger.warning(f"[Vision] mmproj not found: {config.mmproj_path}")

        return command

    async def _poll_readiness(self, process: asyncio.subprocess.Process) -> None:
        async def ready_or_dead() -> bool:
            if process.returncode is not None or self.process is not process:
                return True
            return await self.is_healthy()

        ready = await wait_until(
            ready_or_dead,
            interval=self.config.poll_interval_sec,
            timeout=self.config.ready_timeout_sec
        )
        if self.process is not process or process.returncode is not None:
            return

        if ready:
            async with self.lock:
                if self.process is process and self.state == VisionState.STARTING:
                    self._touch()
                    await self._set_state(VisionState.READY)
                    self._arm_idle_timer()
            return

        logger.warning(
            f"[Vision] Not ready after {self.config.ready_timeout_sec:.0f}s, stopping"
        )
        await self.stop()

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        async with self.lock:
            if self.process is not process:
                return
            logger.warning(
                f"[Vision] llama-server exited unexpectedly (code {returncode}). "
                f"See {runner_log_path('vision-server', self.config.port)}"
            )
            self.process = None
            self.cpu_only = False
            self._cancel_idle_timer()
            self._close_log_handle()
            await self._set_state(VisionState.STOPPED)

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(self) -> None:
        """Stop the vision server (SIGTERM, then SIGKILL after stop_timeout_sec)."""
        async with self.lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        self._cancel_idle_timer()

        current = asyncio.current_task()
        if self._ready_task and self._ready_task is not current and not self._ready_task.done():
            self._ready_task.cancel()
        self._ready_task = None

        process = self.process
        if process is None:
            await self._set_state(VisionState.STOPPED)
            return

        await self._set_state(VisionState.STOPPING)
        try:
            if process.returncode is None:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout_sec)
                except asyncio.TimeoutError:
                    logger.warning("[Vision] SIGTERM timeout. Escalating to SIGKILL")
                    process.kill()
                    await process.wait()
        except ProcessLookupError:
            logger.info("[Vision] Process already dead")
        finally:
            self.process = None
            self.cpu_only = False
            if self._exit_task and self._exit_task is not current and not self._exit_task.done():
                self._exit_task.cancel()
            self._exit_task = None
            self._close_log_handle()
            await self._set_state(VisionState.STOPPED)

    def _close_log_handle(self) -> None:
        if self._log_handle and not self._log_handle.closed:
            self._log_handle.close()
        self._log_handle = None

    # =========================================================================
    # Idle timer
    # =========================================================================

    def _cancel_idle_timer(self) -> None:
        task = self._idle_task
        self._idle_task = None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _arm_idle_timer(self) -> None:
        """Restart the idle countdown. Caller holds the lock."""
        self._cancel_idle_timer()
        if self.config.idle_timeout_sec > 0:
            self._idle_task = asyncio.create_task(self._idle_countdown())

    async def _idle_countdown(self) -> None:
        await asyncio.sleep(self.config.idle_timeout_sec)
        async with self.lock:
            if self.state != VisionState.READY:
                return
            if self.active_requests > 0:
                logger.info(
                    f"[Vision] Idle timeout reached but {self.active_requests} "
                    "request(s) active, re-arming"
                )
                self._arm_idle_timer()
                return

            logger.info(
                f"[Vision] Idle for {self.config.idle_timeout_sec:.0f}s, stopping"
            )
            await self._stop_locked()

    # =========================================================================
    # Requests
    # =========================================================================

    async def is_healthy(self) -> bool:
        url = f"{self.base_url}/health"
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, timeout=HEALTH_CHECK_TIMEOUT)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, timeout=HEALTH_CHECK_TIMEOUT)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def analyze_image(self, image_base64: str, prompt: Optional[str] = None) -> VisionAnalysis:
        """
        Describe an image with the vision model.

        Args:
            image_base64: JPEG image, base64 encoded
            prompt: Analysis instruction (a document-oriented default if None)

        Returns:
            VisionAnalysis with the description and detected document type

        Raises:
            VisionDisabledError / ModelNotFoundError / HealthTimeoutError:
                If the server cannot be brought up
            InferenceError: If the request fails
        """
        async with self.lock:
            self.active_requests += 1
            self._touch()
            if self.metrics:
                self.metrics.set_vision_active_requests(self.active_requests)

        try:
            await self.ensure_running()
            logger.info(f"[Vision] Analyzing image ({self.active_requests} active)")

            client = ChatClient(
                self.base_url,
                timeout=self.config.request_timeout_sec,
                http_client=self.http_client
            )
            messages = [
                ChatMessage(
                    role="user",
                    content=[text_part(prompt or DEFAULT_ANALYSIS_PROMPT), image_part(image_base64)],
                )
            ]
            content = await client.complete(
                messages,
                params=SamplingParams(max_tokens=self.config.max_tokens)
            )
        finally:
            async with self.lock:
                self.active_requests -= 1
                self._touch()
                if self.metrics:
                    self.metrics.set_vision_active_requests(self.active_requests)
                if self.state == VisionState.READY:
                    self._arm_idle_timer()

        logger.info(f"[Vision] Analysis done ({len(content)} chars)")
        return VisionAnalysis(
            description=content,
            document_type=self.document_classifier.classify(content),
            model=self.model_name,
        )

    # =========================================================================
    # Status / settings
    # =========================================================================

    def status(self) -> VisionServerStatus:
        seconds_until_stop = None
        if (self.state == VisionState.READY and self._last_used_mono is not None
                and self.config.idle_timeout_sec > 0):
            elapsed = time.monotonic() - self._last_used_mono
            seconds_until_stop = max(0.0, self.config.idle_timeout_sec - elapsed)

        return VisionServerStatus(
            running=self.is_running,
            starting=self.state == VisionState.STARTING,
            ready=self.state == VisionState.READY,
            model_name=self.model_name,
            port=self.config.port,
            last_used=self.last_used,
            idle_timeout_sec=self.config.idle_timeout_sec,
            seconds_until_stop=seconds_until_stop,
            active_requests=self.active_requests,
            cpu_only=self.cpu_only,
        )

    def set_model_path(self, model_path: str, mmproj_path: str = "") -> None:
        """Takes effect on the next start."""
        self.config.model_path = model_path
        self.config.mmproj_path = mmproj_path
        self.model_name = Path(model_path).name if model_path else ""

    def set_idle_timeout(self, seconds: float) -> None:
        self.config.idle_timeout_sec = seconds
        if self.state == VisionState.READY:
            self._arm_idle_timer()

    def set_gpu_layers(self, layers: int) -> None:
        self.config.gpu_layers = layers
