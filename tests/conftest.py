"""
Shared fixtures.

llama-server is replaced by three fakes:
    - ProcessLauncher: stands in for asyncio.create_subprocess_exec
    - FakeLlamaServer: httpx.MockTransport handler answering /health and
      /v1/chat/completions for every port with a live fake process
    - FakeVRAM: scripted VRAM budgets
"""

import json
import stat
import asyncio
from pathlib import Path
from typing import List, Optional

import httpx
import pytest
import pytest_asyncio

from llama_supervisor.core import logging_server
from llama_supervisor.core import supervisor as supervisor_module
from llama_supervisor.core.config import SupervisorConfig
from llama_supervisor.core.runtime_assets import RuntimeAssets
from llama_supervisor.core.supervisor import ProcessSupervisor
from llama_supervisor.services.vram_service import ResourceBudget


MB = 1024 * 1024
GB = 1024 * MB


def make_model(directory: Path, name: str, size: int = 1 * MB) -> Path:
    """Create a sparse file of the given size."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    with open(path, "wb") as f:
        f.truncate(size)
    return path


class FakeProcess:
    _next_pid = 40000

    def __init__(self, args, env=None, cwd=None, ignore_terminate=False):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.args: List[str] = list(args)
        self.env = env
        self.cwd = cwd
        self.returncode: Optional[int] = None
        self.ignore_terminate = ignore_terminate
        self.signals: List[str] = []
        self._exited = asyncio.Event()

    @property
    def port(self) -> Optional[int]:
        if "--port" in self.args:
            return int(self.args[self.args.index("--port") + 1])
        return None

    def arg(self, flag: str) -> Optional[str]:
        if flag in self.args:
            return self.args[self.args.index(flag) + 1]
        return None

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("TERM")
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.exit(-9)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()


class ProcessLauncher:
    """Records spawned processes instead of running them."""

    def __init__(self):
        self.launched: List[FakeProcess] = []
        self.fail_with: Optional[Exception] = None
        self.ignore_terminate = False

    async def __call__(self, *args, stdout=None, stderr=None, env=None, cwd=None):
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(args, env=env, cwd=cwd, ignore_terminate=self.ignore_terminate)
        self.launched.append(process)
        return process

    @property
    def last(self) -> Optional[FakeProcess]:
        return self.launched[-1] if self.launched else None

    def alive_on(self, port: int) -> bool:
        return any(p.returncode is None and p.port == port for p in self.launched)


class FakeLlamaServer:
    """MockTransport handler emulating llama-server endpoints."""

    def __init__(self, launcher: ProcessLauncher):
        self.launcher = launcher
        self.ready = True
        self.unhealthy_ports = set()
        self.chat_status = 200
        self.chat_chunks: List[str] = ["Hel", "lo"]
        self.completion_text = "This is an invoice from ACME."
        self.requests: List[httpx.Request] = []

    def _sse(self) -> bytes:
        lines = []
        for i, chunk in enumerate(self.chat_chunks):
            finish = "stop" if i == len(self.chat_chunks) - 1 else None
            payload = {"choices": [{"delta": {"content": chunk}, "finish_reason": finish}]}
            lines.append(f"data: {json.dumps(payload)}\n\n")
        lines.append("data: [DONE]\n\n")
        return "".join(lines).encode()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        port = request.url.port
        if not self.launcher.alive_on(port):
            raise httpx.ConnectError("connection refused", request=request)

        if request.url.path == "/health":
            if not self.ready or port in self.unhealthy_ports:
                return httpx.Response(503, json={"status": "loading model"})
            return httpx.Response(200, json={"status": "ok"})

        if request.url.path == "/v1/chat/completions":
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, text="model crashed")
            body = json.loads(request.content)
            if body.get("stream"):
                return httpx.Response(
                    200,
                    content=self._sse(),
                    headers={"content-type": "text/event-stream"}
                )
            return httpx.Response(
                200,
                json={"choices": [{"message": {"role": "assistant", "content": self.completion_text}}]}
            )

        return httpx.Response(404)

    def requests_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


class FakeVRAM:
    def __init__(self, free_mb: int = 20000, total_mb: int = 24576, available: bool = True):
        self.free_mb = free_mb
        self.total_mb = total_mb
        self.available = available
        self.free_after_clear: Optional[int] = None
        self.clear_calls = 0

    def get_budget(self) -> ResourceBudget:
        if not self.available:
            return ResourceBudget.unknown()
        used = self.total_mb - self.free_mb
        return ResourceBudget(
            total_mb=self.total_mb,
            used_mb=used,
            free_mb=self.free_mb,
            usage_percent=used / self.total_mb * 100,
            device_name="Fake GPU",
            available=True,
        )

    async def clear_vram(self, settle_sec: float = 2.0) -> int:
        self.clear_calls += 1
        if self.free_after_clear is not None:
            self.free_mb = self.free_after_clear
        return 0

    def shutdown(self) -> None:
        pass


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep env overrides, runner logs and real port owners out of the tests."""
    for name in ("LLAMA_SERVER_PATH", "BASE_MODELS_PATH", "LLAMA_DATA_DIR", "CONFIG_PATH",
                 "CUDA_VISIBLE_DEVICES", "LD_LIBRARY_PATH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(logging_server, "_log_root", tmp_path / "logs")
    monkeypatch.setattr(supervisor_module, "kill_port_owner", lambda port: 0)


@pytest.fixture
def models_dir(tmp_path) -> Path:
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def binary(tmp_path) -> Path:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    path = bin_dir / "llama-server"
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def assets(binary) -> RuntimeAssets:
    return RuntimeAssets(binary_path=str(binary), library_path=str(binary.parent))


@pytest.fixture
def launcher(monkeypatch) -> ProcessLauncher:
    launcher = ProcessLauncher()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", launcher)
    return launcher


@pytest.fixture
def fake_server(launcher) -> FakeLlamaServer:
    return FakeLlamaServer(launcher)


@pytest_asyncio.fixture
async def http_client(fake_server):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_server.handler))
    yield client
    await client.aclose()


@pytest.fixture
def vram() -> FakeVRAM:
    return FakeVRAM()


@pytest.fixture
def supervisor_config(tmp_path, models_dir, binary) -> SupervisorConfig:
    return SupervisorConfig(
        data_dir=str(tmp_path),
        models_dir=str(models_dir),
        binary_path=str(binary),
        stop_settle_sec=0,
        restart_delay_sec=0,
        clear_settle_sec=0,
        ready_timeout_sec=2,
        health_timeout_sec=1,
    )


@pytest_asyncio.fixture
async def supervisor(supervisor_config, assets, vram, http_client, launcher):
    supervisor = ProcessSupervisor(
        supervisor_config,
        assets=assets,
        vram=vram,
        http_client=http_client
    )
    yield supervisor
    if supervisor.is_running:
        await supervisor.stop()
