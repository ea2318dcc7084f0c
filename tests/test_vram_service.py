from types import SimpleNamespace

import psutil
import pynvml
import pytest

from llama_supervisor.services import vram_service
from llama_supervisor.services.vram_service import ResourceBudget, VRAMService


MIB = 1024 ** 2


class FakeNVML:
    """Scripted replacement for the pynvml functions VRAMService calls."""

    def __init__(self, total_mb=24576, used_mb=4096, processes=()):
        self.total_mb = total_mb
        self.used_mb = used_mb
        self.processes = list(processes)
        self.init_calls = 0
        self.shutdown_calls = 0
        self.fail_init = False

    def install(self, monkeypatch):
        monkeypatch.setattr(pynvml, "nvmlInit", self.init)
        monkeypatch.setattr(pynvml, "nvmlShutdown", self.shutdown)
        monkeypatch.setattr(pynvml, "nvmlDeviceGetHandleByIndex", lambda index: f"gpu{index}")
        monkeypatch.setattr(pynvml, "nvmlDeviceGetName", lambda handle: b"NVIDIA RTX 4090")
        monkeypatch.setattr(pynvml, "nvmlDeviceGetMemoryInfo", self.memory_info)
        monkeypatch.setattr(
            pynvml, "nvmlDeviceGetComputeRunningProcesses", lambda handle: self.processes
        )

    def init(self):
        self.init_calls += 1
        if self.fail_init:
            raise pynvml.NVMLError(pynvml.NVML_ERROR_DRIVER_NOT_LOADED)

    def shutdown(self):
        self.shutdown_calls += 1

    def memory_info(self, handle):
        return SimpleNamespace(
            total=self.total_mb * MIB,
            used=self.used_mb * MIB,
            free=(self.total_mb - self.used_mb) * MIB,
        )


@pytest.fixture
def nvml(monkeypatch):
    fake = FakeNVML()
    fake.install(monkeypatch)
    return fake


def test_budget(nvml):
    budget = VRAMService().get_budget()

    assert budget.available is True
    assert budget.total_mb == 24576
    assert budget.free_mb == 20480
    assert budget.usage_percent == pytest.approx(16.67, abs=0.01)
    assert budget.device_name == "NVIDIA RTX 4090"


def test_budget_is_not_cached(nvml):
    service = VRAMService()
    assert service.get_budget().free_mb == 20480

    nvml.used_mb = 20000

    assert service.get_budget().free_mb == 4576
    assert nvml.init_calls == 1


def test_no_gpu_reports_unknown(nvml):
    nvml.fail_init = True
    service = VRAMService()

    assert service.get_budget() == ResourceBudget.unknown()
    assert service.get_budget().available is False
    assert nvml.init_calls == 1
    assert service.list_gpu_processes() == []


def test_list_gpu_processes(nvml, monkeypatch):
    nvml.processes = [SimpleNamespace(pid=111, usedGpuMemory=3000 * MIB)]
    monkeypatch.setattr(psutil, "Process", lambda pid: SimpleNamespace(name=lambda: "llama-server"))

    processes = VRAMService().list_gpu_processes()

    assert len(processes) == 1
    assert processes[0].pid == 111
    assert processes[0].name == "llama-server"
    assert processes[0].used_mb == 3000


@pytest.mark.asyncio
async def test_clear_vram_kills_inference_processes(nvml, monkeypatch):
    nvml.processes = [
        SimpleNamespace(pid=111, usedGpuMemory=3000 * MIB),
        SimpleNamespace(pid=222, usedGpuMemory=500 * MIB),
    ]
    names = {111: "llama-server", 222: "Xorg"}
    killed = []

    class FakeProcess:
        def __init__(self, pid):
            self.pid = pid

        def name(self):
            return names[self.pid]

        def kill(self):
            killed.append(self.pid)

    monkeypatch.setattr(psutil, "Process", FakeProcess)
    monkeypatch.setattr(vram_service, "kill_processes_matching", lambda fragment: 0)

    count = await VRAMService().clear_vram(settle_sec=0)

    assert count == 1
    assert killed == [111]


def test_shutdown(nvml):
    service = VRAMService()
    service.get_budget()

    service.shutdown()
    service.shutdown()

    assert nvml.shutdown_calls == 1
    assert service.gpu_handle is None
