"""
Model Swap Module

Switches the single primary llama-server between role models (chat,
vision, coder). Only one model fits into VRAM at a time, so a swap is a
full stop -> start cycle with progress reporting.

Components:
    - ModelRole: chat / vision / coder
    - SwapStatus: Snapshot of the swap state
    - ModelSwapManager: Role registry and swap orchestration

Swap Flow (ensure_role_loaded):
    1. Reject if another swap is in flight (SwapInProgressError)
    2. No-op if the role is already loaded and healthy
    3. SwapStarted event with estimated duration
    4. Stop the current model (20%), wait for VRAM release
    5. VRAM strategy (40%), projector setup (60%), start (80%)
    6. Poll health up to ready_timeout_sec with periodic progress events
    7. SwapCompleted event (success or error)

Usage:
    swaps = ModelSwapManager(supervisor, config.swap)
    swaps.auto_detect_models(config.supervisor.models_dir)

    result = await swaps.with_vision_model(analyze)
"""

import time
import asyncio
import logging
from enum import Enum
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .config import SwapConfig
from .errors import HealthTimeoutError, ModelNotFoundError, SwapInProgressError
from .estimator import estimate_model_swap_seconds
from .events import EventBus, SwapCompleted, SwapProgress, SwapStarted
from .supervisor import ProcessSupervisor
from ..services.metrics_service import MetricsService
from ..utils.classifiers import CHAT, CODER, PROJECTOR, VISION, ModelFileClassifier
from ..utils.model_files import GGUF_SUFFIX, find_mmproj_for_model
from ..utils.polling import wait_until


logger = logging.getLogger(__name__)


T = TypeVar("T")

# Sub-directories of models_dir scanned by auto-detection
AUTO_DETECT_SUBDIRS = ("library", "vision", "custom")


class ModelRole(str, Enum):
    CHAT = "chat"
    VISION = "vision"
    CODER = "coder"


@dataclass
class SwapStatus:
    swapping: bool
    current_role: Optional[str]
    target_role: Optional[str]
    elapsed_seconds: float
    estimated_seconds: int
    started_at: Optional[datetime]


class ModelSwapManager:
    """
    Loads the model for a role into the supervisor's llama-server.

    Attributes:
        supervisor: ProcessSupervisor running the model
        config: Swap timing and role model paths
        events: EventBus receiving SwapStarted/SwapProgress/SwapCompleted
        current_role: Role of the loaded model (None before the first swap)
        swapping: True while a swap runs
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        config: Optional[SwapConfig] = None,
        events: Optional[EventBus] = None,
        classifier: Optional[ModelFileClassifier] = None,
        metrics: Optional[MetricsService] = None
    ):
        self.supervisor = supervisor
        self.config = config or SwapConfig()
        self.events = events or EventBus()
        self.classifier = classifier or ModelFileClassifier()
        self.metrics = metrics

        self.role_models: Dict[ModelRole, str] = {
            ModelRole.CHAT: self.config.chat_model,
            ModelRole.VISION: self.config.vision_model,
            ModelRole.CODER: self.config.coder_model,
        }
        self.vision_mmproj = self.config.vision_mmproj

        self.current_role: Optional[ModelRole] = None
        self.swapping = False
        self._target_role: Optional[ModelRole] = None
        self._swap_started: Optional[float] = None
        self._swap_started_at: Optional[datetime] = None
        self._estimated_seconds = 0

    # =========================================================================
    # Role configuration
    # =========================================================================

    def set_chat_model(self, path: str) -> None:
        self.role_models[ModelRole.CHAT] = path

    def set_vision_model(self, path: str, mmproj_path: str = "") -> None:
        self.role_models[ModelRole.VISION] = path
        self.vision_mmproj = mmproj_path

    def set_coder_model(self, path: str) -> None:
        self.role_models[ModelRole.CODER] = path

    def configured_models(self) -> Dict[str, str]:
        models = {role.value: path for role, path in self.role_models.items()}
        models["vision_mmproj"] = self.vision_mmproj
        return models

    def has_vision_model(self) -> bool:
        path = self.role_models[ModelRole.VISION]
        return bool(path) and Path(path).is_file()

    def vision_model_info(self) -> Dict[str, Any]:
        path = self.role_models[ModelRole.VISION]
        return {
            "available": self.has_vision_model(),
            "model": Path(path).name if path else "",
            "model_path": path,
            "mmproj_path": self.vision_mmproj,
            "loaded": self.current_role == ModelRole.VISION,
        }

    def active_role(self) -> Optional[ModelRole]:
        """
        Role of the model the supervisor is serving.

        Falls back to matching the supervisor's running model against the
        configured role paths when the model was started outside a swap.
        """
        if self.current_role is not None:
            return self.current_role
        if not self.supervisor.is_running or not self.supervisor.model_path:
            return None
        for role, path in self.role_models.items():
            if path and Path(path) == Path(self.supervisor.model_path):
                return role
        return None

    def swap_status(self) -> SwapStatus:
        elapsed = time.time() - self._swap_started if self.swapping and self._swap_started else 0.0
        return SwapStatus(
            swapping=self.swapping,
            current_role=self.current_role.value if self.current_role else None,
            target_role=self._target_role.value if self.swapping and self._target_role else None,
            elapsed_seconds=elapsed,
            estimated_seconds=self._estimated_seconds if self.swapping else 0,
            started_at=self._swap_started_at if self.swapping else None,
        )

    # =========================================================================
    # Auto-detection
    # =========================================================================

    def auto_detect_models(self, models_dir: str) -> Dict[str, str]:
        """
        Fill empty roles from the .gguf files in models_dir.

        Scans models_dir and its library/, vision/ and custom/ folders.
        Roles that are already configured are left alone.

        Returns:
            The configured models after detection
        """
        if not models_dir:
            return self.configured_models()

        files: List[Path] = []
        for directory in [Path(models_dir)] + [Path(models_dir) / d for d in AUTO_DETECT_SUBDIRS]:
            if not directory.is_dir():
                continue
            files.extend(
                sorted(p for p in directory.iterdir()
                       if p.is_file() and p.name.lower().endswith(GGUF_SUFFIX))
            )

        logger.info(f"[Swap] Auto-detect: {len(files)} GGUF files in {models_dir}")

        chat_candidates: List[Path] = []
        for path in files:
            label = self.classifier.classify(path.name)
            if label == PROJECTOR:
                if not self.vision_mmproj:
                    self.vision_mmproj = str(path)
                    logger.info(f"[Swap] mmproj detected: {path.name}")
            elif label == VISION:
                if not self.role_models[ModelRole.VISION]:
                    self.role_models[ModelRole.VISION] = str(path)
                    logger.info(f"[Swap] Vision model detected: {path.name}")
            elif label == CODER:
                if not self.role_models[ModelRole.CODER]:
                    self.role_models[ModelRole.CODER] = str(path)
                    logger.info(f"[Swap] Coder model detected: {path.name}")
            elif label == CHAT:
                chat_candidates.append(path)

        if not self.role_models[ModelRole.CHAT] and chat_candidates:
            preferred = [p for p in chat_candidates if self.classifier.is_preferred_chat(p.name)]
            chosen = (preferred or chat_candidates)[0]
            self.role_models[ModelRole.CHAT] = str(chosen)
            logger.info(f"[Swap] Chat model detected: {chosen.name}")

        vision = self.role_models[ModelRole.VISION]
        if vision and not self.vision_mmproj:
            self.vision_mmproj = find_mmproj_for_model(vision, models_dir) or ""

        return self.configured_models()

    # =========================================================================
    # Swapping
    # =========================================================================

    async def ensure_role_loaded(self, role: ModelRole) -> float:
        """
        Make sure the model for a role is loaded.

        Returns:
            Seconds the swap took (0.0 if nothing had to be done)

        Raises:
            SwapInProgressError: If another swap is running
            ModelNotFoundError: If no model is configured for the role or
                the file is missing
            HealthTimeoutError: If the new model does not become healthy
        """
        role = ModelRole(role)

        if self.swapping:
            elapsed = time.time() - self._swap_started if self._swap_started else 0.0
            raise SwapInProgressError(role.value, elapsed)

        if (self.active_role() == role and self.supervisor.is_running
                and await self.supervisor.is_healthy()):
            self.current_role = role
            return 0.0

        model_path = self.role_models.get(role, "")
        if not model_path:
            raise ModelNotFoundError(role=role.value)
        if not Path(model_path).is_file():
            raise ModelNotFoundError(model_path, role=role.value)

        self.swapping = True
        self._target_role = role
        self._swap_started = time.time()
        self._swap_started_at = datetime.now()
        self._estimated_seconds = estimate_model_swap_seconds(model_path)

        from_role = self.current_role.value if self.current_role else ""
        logger.info(
            f"[Swap] {from_role or 'none'} -> {role.value} "
            f"({Path(model_path).name}, ~{self._estimated_seconds}s)"
        )

        try:
            await self.events.emit(SwapStarted(from_role, role.value, self._estimated_seconds))
            async with self.supervisor.transition():
                await self._swap(role, model_path)
        except Exception as e:
            duration = time.time() - self._swap_started
            logger.error(f"[Swap] Swap to {role.value} failed after {duration:.1f}s: {e}")
            if self.metrics:
                self.metrics.record_swap(role.value, False, duration)
            await self.events.emit(SwapCompleted(role.value, False, duration, str(e)))
            raise
        finally:
            self.swapping = False

        duration = time.time() - self._swap_started
        logger.info(f"[Swap] {role.value} ready in {duration:.1f}s")
        if self.metrics:
            self.metrics.record_swap(role.value, True, duration)
        await self.events.emit(SwapCompleted(role.value, True, duration))
        return duration

    async def _swap(self, role: ModelRole, model_path: str) -> None:
        supervisor = self.supervisor
        await self._progress(10, "Preparing model swap")

        if supervisor.is_running:
            await self._progress(20, "Stopping current model")
            await supervisor.stop()
            await asyncio.sleep(self.config.release_delay_sec)

        await self._progress(40, "Checking VRAM")
        gpu_layers = await supervisor.apply_vram_strategy(model_path)

        if role == ModelRole.VISION:
            await self._progress(60, "Configuring vision projector")
            supervisor.set_mmproj_path(self.vision_mmproj)
        else:
            await self._progress(60, "Configuring model")
            supervisor.set_mmproj_path("")

        await self._progress(80, f"Loading {Path(model_path).name}")
        await supervisor.start(model_path, gpu_layers)

        async def report(elapsed: float) -> None:
            percent = min(95, 80 + int(elapsed / self.config.ready_timeout_sec * 15))
            await self._progress(percent, f"Waiting for model ({elapsed:.0f}s)")

        ready = await wait_until(
            supervisor.is_healthy,
            interval=self.config.poll_interval_sec,
            timeout=self.config.ready_timeout_sec,
            on_tick=report,
            tick_every=self.config.progress_interval_sec
        )
        if not ready:
            raise HealthTimeoutError(
                f"{supervisor.base_url}/health", self.config.ready_timeout_sec
            )

        self.current_role = role
        await self._progress(100, f"{role.value} model ready")

    async def _progress(self, percent: int, message: str) -> None:
        await self.events.emit(SwapProgress(percent, message))

    async def ensure_chat_model(self) -> float:
        return await self.ensure_role_loaded(ModelRole.CHAT)

    async def ensure_vision_model(self) -> float:
        return await self.ensure_role_loaded(ModelRole.VISION)

    async def ensure_coder_model(self) -> float:
        return await self.ensure_role_loaded(ModelRole.CODER)

    async def restore_original_model(self) -> float:
        """Go back to the chat model."""
        return await self.ensure_role_loaded(ModelRole.CHAT)

    async def with_vision_model(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run fn with the vision model loaded, then restore the previous role.

        A failing restore is logged only. An exception from fn propagates
        after the restore.
        """
        previous = self.active_role() or ModelRole.CHAT
        await self.ensure_vision_model()
        try:
            return await fn()
        finally:
            if previous != ModelRole.VISION:
                try:
                    await self.ensure_role_loaded(previous)
                except Exception as e:
                    logger.warning(f"[Swap] Could not restore {previous.value} model: {e}")
