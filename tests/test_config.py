import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from llama_supervisor.core.config import (
    DEFAULT_DATA_DIR,
    AppConfig,
    LoggingConfig,
    SupervisorConfig,
    VRAMStrategy,
    WatchdogConfig,
    load_config,
)
from llama_supervisor.core.errors import ConfigurationError


def test_defaults():
    config = AppConfig()

    assert config.supervisor.port == 2026
    assert config.supervisor.vram_strategy == VRAMStrategy.SMART_SWAP
    assert config.supervisor.data_dir == str(DEFAULT_DATA_DIR)
    assert config.supervisor.models_dir == str(DEFAULT_DATA_DIR / "models")
    assert config.vision.port == 2024
    assert config.watchdog.max_failures == 3
    assert config.swap.auto_detect is True


def test_environment_overrides(tmp_path, monkeypatch):
    binary = tmp_path / "llama-server"
    binary.write_text("")
    monkeypatch.setenv("LLAMA_SERVER_PATH", str(binary))
    monkeypatch.setenv("BASE_MODELS_PATH", str(tmp_path / "models"))
    monkeypatch.setenv("LLAMA_DATA_DIR", str(tmp_path / "data"))

    config = SupervisorConfig(binary_path="/ignored", models_dir="/ignored")

    assert config.binary_path == str(binary)
    assert config.models_dir == str(tmp_path / "models")
    assert config.data_dir == str(tmp_path / "data")


def test_models_dir_follows_data_dir(tmp_path):
    config = SupervisorConfig(data_dir=str(tmp_path))
    assert config.models_dir == str(tmp_path / "models")


def test_models_dir_must_be_directory(tmp_path):
    not_a_dir = tmp_path / "file"
    not_a_dir.write_text("")

    with pytest.raises(ValidationError):
        SupervisorConfig(models_dir=str(not_a_dir))


def test_unknown_vram_strategy_rejected():
    with pytest.raises(ValidationError):
        SupervisorConfig(vram_strategy="turbo")


@pytest.mark.parametrize("overrides", [
    {"check_interval_sec": 0},
    {"max_failures": 0},
    {"initial_backoff_sec": 10, "max_backoff_sec": 5},
])
def test_invalid_watchdog_config(overrides):
    with pytest.raises(ValidationError):
        WatchdogConfig(**overrides)


def test_log_level_normalized():
    assert LoggingConfig(level="debug").level == "DEBUG"
    with pytest.raises(ValidationError):
        LoggingConfig(level="chatty")


def test_port_collision_rejected():
    with pytest.raises(ValidationError):
        AppConfig(supervisor={"port": 3000}, vision={"port": 3000})


def test_port_collision_allowed_when_vision_disabled():
    config = AppConfig(supervisor={"port": 3000}, vision={"port": 3000, "enabled": False})
    assert config.vision.enabled is False


def test_load_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "supervisor": {"port": 9000, "vram_strategy": "smart_offload"},
        "watchdog": {"enabled": False},
    }))

    config = load_config(str(path))

    assert config.supervisor.port == 9000
    assert config.supervisor.vram_strategy == VRAMStrategy.SMART_OFFLOAD
    assert config.watchdog.enabled is False


def test_load_config_missing_explicit_path(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "missing.json"))


def test_load_config_missing_default_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert load_config().supervisor.port == 2026


def test_load_config_env_path(tmp_path, monkeypatch):
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"supervisor": {"port": 9100}}))
    monkeypatch.setenv("CONFIG_PATH", str(path))

    assert load_config().supervisor.port == 9100


def test_load_config_invalid_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    with pytest.raises(ConfigurationError, match="Invalid JSON"):
        load_config(str(path))


def test_load_config_validation_error(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"supervisor": {"port": 80}}))

    with pytest.raises(ConfigurationError, match="validation failed"):
        load_config(str(path))


def test_example_config_is_valid():
    example = Path(__file__).resolve().parent.parent / "config.example.json"
    config = load_config(str(example))
    assert config.supervisor.port == 2026
    assert config.vision.port == 2024
