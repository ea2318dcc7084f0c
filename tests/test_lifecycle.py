import json
import logging

import httpx
import pytest

import run
from llama_supervisor.core import logging_server
from llama_supervisor.core.config import AppConfig
from llama_supervisor.core.logging_server import StructuredFormatter, runner_log_path, setup_logging
from llama_supervisor.core.model_swap import ModelRole
from llama_supervisor.lifecycle import (
    get_container,
    is_shutting_down,
    set_container,
    shutdown_handler,
    startup_handler,
)
from llama_supervisor.lifecycle import startup as startup_module

from conftest import FakeVRAM, GB, MB, make_model


@pytest.fixture(autouse=True)
def fresh_container():
    set_container(None)
    yield
    set_container(None)


@pytest.fixture
def app_config(tmp_path, models_dir, binary) -> AppConfig:
    return AppConfig(
        supervisor=dict(
            data_dir=str(tmp_path),
            models_dir=str(models_dir),
            binary_path=str(binary),
            stop_settle_sec=0,
            restart_delay_sec=0,
            clear_settle_sec=0,
        ),
        swap=dict(release_delay_sec=0, poll_interval_sec=0.02, ready_timeout_sec=2),
        vision=dict(idle_timeout_sec=300),
        logging=dict(log_dir=str(tmp_path / "logs")),
    )


@pytest.fixture
def patched_services(monkeypatch, fake_server, launcher):
    """Route the real startup through the fake llama-server and GPU."""
    vram = FakeVRAM()
    monkeypatch.setattr(
        startup_module, "_create_http_client",
        lambda config: httpx.AsyncClient(transport=httpx.MockTransport(fake_server.handler))
    )
    monkeypatch.setattr(startup_module, "VRAMService", lambda index: vram)
    return vram


# =============================================================================
# Startup / shutdown
# =============================================================================

@pytest.mark.asyncio
async def test_startup_wires_components(app_config, patched_services, models_dir, launcher):
    chat = make_model(models_dir, "qwen2.5-3b-instruct.gguf", 2 * GB)
    vision = make_model(models_dir, "llava-v1.6-7b.gguf", 4 * GB)
    mmproj = make_model(models_dir, "mmproj-llava-f16.gguf", 600 * MB)
    (models_dir / "broken.gguf.part1").write_bytes(b"x")

    container = await startup_handler(app_config, load_model=False)

    assert container is get_container()
    assert container.swap_manager.role_models[ModelRole.CHAT] == str(chat)
    assert container.config.vision.model_path == str(vision)
    assert container.config.vision.mmproj_path == str(mmproj)
    assert not (models_dir / "broken.gguf.part1").exists()
    assert container.watchdog is None
    assert launcher.launched == []

    await shutdown_handler(container)
    assert container.http_client.is_closed


@pytest.mark.asyncio
async def test_startup_loads_chat_model(app_config, patched_services, models_dir, launcher):
    chat = make_model(models_dir, "qwen2.5-3b-instruct.gguf", 2 * GB)

    container = await startup_handler(app_config)
    try:
        assert launcher.last.arg("-m") == str(chat)
        assert container.supervisor.is_running
        assert container.swap_manager.current_role == ModelRole.CHAT
        assert container.watchdog.running
        assert len(container.background_tasks) == 1
    finally:
        await shutdown_handler(container)

    assert is_shutting_down()
    assert not container.supervisor.is_running
    assert launcher.last.returncode is not None
    assert container.background_tasks == []
    assert container.watchdog.running is False


@pytest.mark.asyncio
async def test_configured_model_path_becomes_chat_role(app_config, patched_services, models_dir):
    make_model(models_dir, "qwen2.5-3b-instruct.gguf")
    pinned = make_model(models_dir, "phi-3-mini.gguf")
    app_config.supervisor.model_path = str(pinned)

    container = await startup_handler(app_config, load_model=False)
    try:
        assert container.swap_manager.role_models[ModelRole.CHAT] == str(pinned)
    finally:
        await shutdown_handler(container)


@pytest.mark.asyncio
async def test_startup_without_models(app_config, patched_services, launcher):
    container = await startup_handler(app_config)
    try:
        assert launcher.launched == []
        assert not container.supervisor.is_running
    finally:
        await shutdown_handler(container)


@pytest.mark.asyncio
async def test_failed_chat_load_is_not_fatal(app_config, patched_services, models_dir, launcher):
    make_model(models_dir, "qwen2.5-3b-instruct.gguf")
    launcher.fail_with = OSError("exec format error")

    container = await startup_handler(app_config)
    try:
        assert not container.supervisor.is_running
        assert container.watchdog is not None
    finally:
        await shutdown_handler(container)


@pytest.mark.asyncio
async def test_startup_failure_cleans_up(app_config, patched_services, monkeypatch):
    def broken_discovery(**kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(startup_module, "discover_runtime_assets", broken_discovery)

    with pytest.raises(RuntimeError):
        await startup_handler(app_config)

    assert get_container().http_client.is_closed


# =============================================================================
# Logging
# =============================================================================

@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_creates_files(tmp_path, restore_root_logger):
    setup_logging(logging.DEBUG, use_structured=True, log_dir=str(tmp_path / "out"))

    assert (tmp_path / "out" / "supervisor.log").exists()
    assert runner_log_path("vision-server", 2024) == tmp_path / "out" / "runners" / "vision-server_2024.log"
    assert logging.getLogger("httpx").level == logging.WARNING


def test_structured_formatter_extra_fields():
    record = logging.LogRecord("llama_supervisor.core.supervisor", logging.INFO, __file__, 10,
                               "Started %s", ("qwen",), None)
    record.model = "qwen.gguf"
    record.port = 2026

    data = json.loads(StructuredFormatter().format(record))

    assert data["message"] == "Started qwen"
    assert data["level"] == "INFO"
    assert data["model"] == "qwen.gguf"
    assert data["port"] == 2026
    assert "role" not in data


def test_runner_log_path_uses_log_root():
    path = runner_log_path("llama-server", 2026)

    assert path == logging_server._log_root / "runners" / "llama-server_2026.log"
    assert path.parent.is_dir()


# =============================================================================
# CLI
# =============================================================================

@pytest.fixture
def config_file(tmp_path, models_dir):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "supervisor": {"data_dir": str(tmp_path), "models_dir": str(models_dir)},
        "logging": {"log_dir": str(tmp_path / "logs")},
    }))
    return path


@pytest.fixture
def quiet_cli(monkeypatch):
    monkeypatch.setattr(run, "setup_logging", lambda *args, **kwargs: None)


def test_cli_default_command_is_serve():
    assert run.parse_args([]).command == "serve"
    args = run.parse_args(["-c", "x.json", "download", "https://host/m.gguf", "-f", "m.gguf"])
    assert (args.config, args.command, args.filename) == ("x.json", "download", "m.gguf")


def test_cli_models(config_file, models_dir, quiet_cli, capsys):
    make_model(models_dir, "qwen2.5-7b.gguf", 2 * MB)

    run.main(["-c", str(config_file), "models"])

    assert "qwen2.5-7b.gguf" in capsys.readouterr().out


def test_cli_recommended_models(config_file, quiet_cli, capsys):
    run.main(["-c", str(config_file), "models", "--recommended"])

    listed = json.loads(capsys.readouterr().out)
    assert {m["category"] for m in listed} == {"chat", "code", "fast", "vision"}


def test_cli_missing_config_exits(tmp_path, quiet_cli, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run.main(["-c", str(tmp_path / "missing.json"), "models"])

    assert exc_info.value.code == 1
    assert "FATAL" in capsys.readouterr().err
