"""
GPU VRAM Query Module

This module answers "how much GPU memory is free right now" and frees it
when a VRAM strategy asks for a clean GPU.

Components:
    - ResourceBudget: Point-in-time VRAM figures for one GPU
    - GPUProcess: A process holding GPU memory
    - VRAMService: NVML-backed query and cleanup service

Behavior Without a GPU:
    If NVML cannot be initialized (no NVIDIA driver, no GPU, container
    without device access), every budget reports available=False and callers
    fall back to their configured defaults instead of failing.

Budgets are never cached: each get_budget() call asks the driver again.

Usage:
    vram = VRAMService(gpu_device_index=0)
    budget = vram.get_budget()
    if budget.available and budget.free_mb < required_mb:
        killed = await vram.clear_vram()

Note:
    Requires pynvml (NVIDIA Management Library). Only supports NVIDIA GPUs.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import psutil
import pynvml

from ..utils.process_utils import kill_processes_matching


logger = logging.getLogger(__name__)


# Process name fragments that identify inference runtimes on the GPU
INFERENCE_PROCESS_MARKERS = ("llama", "ggml")


@dataclass
class ResourceBudget:
    """
    VRAM figures for one GPU at one moment.

    Attributes:
        total_mb: Total VRAM
        used_mb: VRAM in use
        free_mb: VRAM available for new allocations
        usage_percent: used / total * 100
        device_name: GPU model name
        available: False when the GPU could not be queried ("unknown")
    """
    total_mb: int = 0
    used_mb: int = 0
    free_mb: int = 0
    usage_percent: float = 0.0
    device_name: str = "unknown"
    available: bool = False

    @classmethod
    def unknown(cls) -> "ResourceBudget":
        return cls()


@dataclass
class GPUProcess:
    pid: int
    name: str
    used_mb: int


class VRAMService:
    """
    Query and free VRAM on one NVIDIA GPU.

    Attributes:
        gpu_device_index: GPU device to query
        gpu_handle: NVML handle (None until initialized or if unavailable)
    """

    def __init__(self, gpu_device_index: int = 0):
        self.gpu_device_index = gpu_device_index
        self.gpu_handle = None
        self.device_name = "unknown"
        self._nvml_failed = False

    def _ensure_nvml(self) -> bool:
        """Initialize NVML once. Returns False if no GPU can be queried."""
        if self.gpu_handle is not None:
            return True
        if self._nvml_failed:
            return False

        try:
            pynvml.nvmlInit()
            self.gpu_handle = pynvml.nvmlDeviceGetHandleByIndex(
                self.gpu_device_index
            )
            name = pynvml.nvmlDeviceGetName(self.gpu_handle)
            self.device_name = name.decode() if isinstance(name, bytes) else str(name)
            logger.info(
                f"[VRAM] NVML initialized for GPU {self.gpu_device_index}: "
                f"{self.device_name}"
            )
            return True
        except pynvml.NVMLError as e:
            self._nvml_failed = True
            logger.warning(f"[VRAM] GPU not available, VRAM unknown: {e}")
            return False

    def get_budget(self) -> ResourceBudget:
        """
        Read the current VRAM figures.

        Returns:
            ResourceBudget, with available=False if NVML is unusable
        """
        if not self._ensure_nvml():
            return ResourceBudget.unknown()

        try:
            mem_info = pynvml.nvmlDeviceGetMemoryInfo(self.gpu_handle)
        except pynvml.NVMLError as e:
            logger.error(f"[VRAM] Failed to get VRAM info: {e}")
            return ResourceBudget.unknown()

        total_mb = int(mem_info.total / (1024 ** 2))
        used_mb = int(mem_info.used / (1024 ** 2))
        free_mb = int(mem_info.free / (1024 ** 2))

        return ResourceBudget(
            total_mb=total_mb,
            used_mb=used_mb,
            free_mb=free_mb,
            usage_percent=(used_mb / total_mb * 100) if total_mb else 0.0,
            device_name=self.device_name,
            available=True,
        )

    def list_gpu_processes(self) -> List[GPUProcess]:
        """List compute processes holding memory on the GPU."""
        if not self._ensure_nvml():
            return []

        try:
            running = pynvml.nvmlDeviceGetComputeRunningProcesses(self.gpu_handle)
        except pynvml.NVMLError as e:
            logger.warning(f"[VRAM] Cannot list GPU processes: {e}")
            return []

        processes = []
        for proc in running:
            try:
                name = psutil.Process(proc.pid).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                name = "unknown"
            used = proc.usedGpuMemory or 0
            processes.append(GPUProcess(
                pid=proc.pid,
                name=name,
                used_mb=int(used / (1024 ** 2)),
            ))
        return processes

    async def clear_vram(self, settle_sec: float = 2.0) -> int:
        """
        Kill every inference process on the GPU.

        Kills GPU processes whose name contains "llama" or "ggml", then
        any remaining llama-server process, and waits for the driver to
        reclaim the memory.

        Returns:
            Number of processes killed
        """
        killed = 0
        for proc in self.list_gpu_processes():
            lowered = proc.name.lower()
            if not any(marker in lowered for marker in INFERENCE_PROCESS_MARKERS):
                continue
            logger.info(
                f"[VRAM] Killing GPU process {proc.name} "
                f"(PID {proc.pid}, {proc.used_mb} MB)"
            )
            try:
                psutil.Process(proc.pid).kill()
                killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.warning(f"[VRAM] Could not kill PID {proc.pid}: {e}")

        killed += kill_processes_matching("llama-server")

        if settle_sec > 0:
            await asyncio.sleep(settle_sec)

        budget = self.get_budget()
        if budget.available:
            logger.info(
                f"[VRAM] Cleared {killed} process(es), free: {budget.free_mb} MB"
            )
        return killed

    def shutdown(self) -> None:
        """Release NVML."""
        if self.gpu_handle is None:
            return
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            logger.debug(f"[VRAM] NVML shutdown error: {e}")
        self.gpu_handle = None
