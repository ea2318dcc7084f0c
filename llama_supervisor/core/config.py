"""
Supervisor Configuration Module

This module provides Pydantic-based configuration models for the supervisor.
All configuration is validated and type-checked at load time.

Configuration Sections:
    - SupervisorConfig: Primary llama-server (paths, port, VRAM strategy)
    - WatchdogConfig: Health monitoring and restart backoff
    - SwapConfig: Role swap timing
    - VisionServerConfig: On-demand multimodal llama-server
    - DownloadConfig: Model artifact downloads
    - LoggingConfig: Log level, format and directory
    - AppConfig: Root configuration container

Environment Variables:
    - LLAMA_SERVER_PATH: Override llama-server binary path (takes priority over config file)
    - BASE_MODELS_PATH: Override models directory (takes priority over config file)
    - LLAMA_DATA_DIR: Override data directory (holds bin/, models/, logs/)
    - CONFIG_PATH: Override config file path (default: config.json)

Usage:
    from llama_supervisor.core.config import load_config

    config = load_config("config.json")
    print(config.supervisor.port, config.supervisor.vram_strategy)
"""

import os
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError


logger = logging.getLogger(__name__)


DEFAULT_DATA_DIR = Path.home() / ".llama-supervisor"


class VRAMStrategy(str, Enum):
    """How the supervisor frees GPU memory before loading a model."""
    SMART_SWAP = "smart_swap"
    ALWAYS_CLEAR = "always_clear"
    SMART_OFFLOAD = "smart_offload"
    MANUAL = "manual"


class SupervisorConfig(BaseModel):
    """
    Configuration for the primary llama-server process.

    Attributes:
        port/host: Where llama-server binds
        data_dir: Base directory (bin/, models/, logs/)
        models_dir: Directory scanned for .gguf files
        binary_path: Explicit llama-server binary (empty = discover)
        library_path: Directory with the runtime shared libraries
        model_path: Model started at boot (empty = none)
        vram_strategy: VRAM handling before each start
    """

    port: int = Field(
        default=2026,
        ge=1024,
        le=65535,
        description="Port for llama-server"
    )
    host: str = Field(
        default="127.0.0.1",
        description="Bind address for llama-server"
    )

    # Paths
    data_dir: str = Field(
        default="",
        validate_default=True,
        description="Data directory (default: ~/.llama-supervisor)"
    )
    models_dir: str = Field(
        default="",
        validate_default=True,
        description="Directory containing .gguf models (default: <data_dir>/models)"
    )
    binary_path: str = Field(
        default="",
        validate_default=True,
        description="Absolute path to llama-server binary (empty = auto-discover)"
    )
    library_path: str = Field(
        default="",
        description="Directory with libggml/libmtmd shared libraries"
    )
    model_path: str = Field(
        default="",
        description="Model loaded at startup"
    )
    mmproj_path: str = Field(
        default="",
        description="Multimodal projector for vision models"
    )

    # llama-server parameters
    gpu_layers: int = Field(
        default=99,
        ge=0,
        le=999,
        description="Layers offloaded to GPU (99 = all)"
    )
    context_size: int = Field(
        default=16384,
        ge=512,
        le=1048576,
        description="Context window in tokens"
    )
    threads: int = Field(
        default=8,
        ge=0,
        le=256,
        description="CPU threads (0 = llama-server default)"
    )
    use_jinja: bool = Field(
        default=True,
        description="Pass --jinja for native chat templates and tool calls"
    )

    # VRAM management
    vram_strategy: VRAMStrategy = Field(
        default=VRAMStrategy.SMART_SWAP,
        description="VRAM strategy applied before each start"
    )
    vram_reserve_mb: int = Field(
        default=512,
        ge=0,
        le=16384,
        description="VRAM (MB) kept free for the desktop and other apps"
    )
    use_mmap: bool = Field(
        default=True,
        description="Memory-map model files (disable with --no-mmap)"
    )
    use_mlock: bool = Field(
        default=False,
        description="Lock model in RAM (--mlock)"
    )
    gpu_device_index: int = Field(
        default=0,
        ge=0,
        description="GPU queried for VRAM information"
    )

    # Timing
    health_timeout_sec: float = Field(
        default=2.0,
        gt=0,
        le=30,
        description="Timeout for a single /health request"
    )
    ready_timeout_sec: float = Field(
        default=60.0,
        gt=0,
        le=3600,
        description="How long readiness is polled after spawn"
    )
    stop_settle_sec: float = Field(
        default=0.5,
        ge=0,
        le=30,
        description="Pause after stop so the driver reclaims VRAM"
    )
    restart_delay_sec: float = Field(
        default=2.0,
        ge=0,
        le=60,
        description="Pause between stop and start on restart/model switch"
    )
    clear_settle_sec: float = Field(
        default=2.0,
        ge=0,
        le=60,
        description="Pause after killing GPU processes"
    )
    chat_timeout_sec: float = Field(
        default=300.0,
        ge=10,
        le=3600,
        description="Timeout for streaming chat requests"
    )

    @field_validator("binary_path")
    @classmethod
    def validate_binary_path(cls, v: str) -> str:
        """
        Resolve the llama-server binary override.

        Priority order:
        1. LLAMA_SERVER_PATH environment variable
        2. Value from config file

        A missing file is not an error here; discovery runs at start time.
        """
        env_path = os.getenv("LLAMA_SERVER_PATH")
        if env_path:
            logger.info(f"Using llama-server from ENV: {env_path}")
            v = env_path
        elif v:
            logger.info(f"Using llama-server from config: {v}")

        if v and not Path(v).is_file():
            logger.warning(f"Configured llama-server not found at: {v}")
        return v

    @field_validator("models_dir")
    @classmethod
    def validate_models_dir(cls, v: str) -> str:
        """Apply BASE_MODELS_PATH override and reject non-directories."""
        env_path = os.getenv("BASE_MODELS_PATH")
        if env_path:
            logger.info(f"Using models directory from ENV: {env_path}")
            v = env_path

        if v and Path(v).exists() and not Path(v).is_dir():
            raise ValueError(f"models_dir is not a directory: {v}")
        return v

    @field_validator("data_dir")
    @classmethod
    def validate_data_dir(cls, v: str) -> str:
        """Apply LLAMA_DATA_DIR override, defaulting to ~/.llama-supervisor."""
        env_path = os.getenv("LLAMA_DATA_DIR")
        if env_path:
            v = env_path
        return v or str(DEFAULT_DATA_DIR)

    @model_validator(mode="after")
    def derive_models_dir(self) -> "SupervisorConfig":
        """Default models_dir to <data_dir>/models."""
        if not self.models_dir:
            self.models_dir = str(Path(self.data_dir) / "models")
        return self

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class WatchdogConfig(BaseModel):
    """
    Watchdog configuration.

    Backoff grows by backoff_multiplier after every failed restart and is
    capped at max_backoff_sec. max_restarts=0 means unlimited.
    """

    enabled: bool = Field(default=True, description="Start watchdog at boot")
    check_interval_sec: float = Field(
        default=5.0,
        gt=0,
        le=3600,
        description="Seconds between health checks"
    )
    max_failures: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Consecutive failures before a restart"
    )
    initial_backoff_sec: float = Field(default=1.0, ge=0, le=3600)
    max_backoff_sec: float = Field(default=60.0, ge=0, le=86400)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    max_restarts: int = Field(
        default=0,
        ge=0,
        description="Restart limit (0 = unlimited)"
    )
    health_timeout_sec: float = Field(default=3.0, gt=0, le=60)
    restart_ready_timeout_sec: float = Field(
        default=30.0,
        gt=0,
        le=3600,
        description="How long a restarted server may take to become healthy"
    )
    restart_settle_sec: float = Field(
        default=0.5,
        ge=0,
        le=60,
        description="Pause between stop and start during a restart"
    )

    @model_validator(mode="after")
    def validate_backoff_range(self) -> "WatchdogConfig":
        if self.max_backoff_sec < self.initial_backoff_sec:
            raise ValueError("max_backoff_sec must be >= initial_backoff_sec")
        return self


class SwapConfig(BaseModel):
    """Timing of chat/vision/coder model swaps."""

    ready_timeout_sec: float = Field(default=60.0, gt=0, le=3600)
    poll_interval_sec: float = Field(default=1.0, gt=0, le=60)
    progress_interval_sec: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Progress events while waiting for health"
    )
    release_delay_sec: float = Field(
        default=1.0,
        ge=0,
        le=60,
        description="Pause after stop so VRAM is released"
    )
    chat_model: str = Field(default="", description="Model for the chat role")
    vision_model: str = Field(default="", description="Model for the vision role")
    vision_mmproj: str = Field(default="", description="Projector for the vision model")
    coder_model: str = Field(default="", description="Model for the coder role")
    auto_detect: bool = Field(
        default=True,
        description="Fill empty roles from models_dir at startup"
    )


class VisionServerConfig(BaseModel):
    """
    Configuration for the on-demand vision llama-server.

    The process starts lazily on the first image request and stops after
    idle_timeout_sec without requests (0 disables eviction).
    """

    enabled: bool = Field(default=True)
    port: int = Field(default=2024, ge=1024, le=65535)
    host: str = Field(default="127.0.0.1")
    model_path: str = Field(default="")
    mmproj_path: str = Field(default="")
    gpu_layers: int = Field(default=99, ge=0, le=999)
    context_size: int = Field(default=8192, ge=512, le=1048576)
    idle_timeout_sec: float = Field(default=300.0, ge=0, le=86400)
    main_gpu: int = Field(
        default=-1,
        ge=-1,
        description="GPU index for --main-gpu (-1 = llama-server default)"
    )
    backend: str = Field(
        default="auto",
        description="Binary variant under bin/<backend>/ (auto = shared binary)"
    )
    flash_attention: bool = Field(default=True)
    vram_safety_margin_mb: int = Field(default=500, ge=0, le=16384)
    ready_timeout_sec: float = Field(default=60.0, gt=0, le=3600)
    poll_interval_sec: float = Field(default=0.5, gt=0, le=60)
    request_timeout_sec: float = Field(default=600.0, gt=0, le=7200)
    stop_timeout_sec: float = Field(default=5.0, gt=0, le=120)
    max_tokens: int = Field(default=2048, ge=1, le=131072)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class DownloadConfig(BaseModel):
    """Model artifact download settings."""

    chunk_size: int = Field(default=64 * 1024, ge=1024, le=16 * 1024 * 1024)
    max_redirects: int = Field(default=10, ge=0, le=50)
    user_agent: str = Field(default="llama-supervisor/1.0")
    connect_timeout_sec: float = Field(default=30.0, gt=0, le=600)
    read_timeout_sec: float = Field(default=120.0, gt=0, le=3600)
    log_every_percent: int = Field(default=5, ge=1, le=100)
    progress_queue_size: int = Field(default=100, ge=1, le=10000)


class LoggingConfig(BaseModel):
    """Logging output settings."""

    level: str = Field(default="INFO")
    structured: bool = Field(default=False, description="JSON log lines")
    log_dir: str = Field(default="logs")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class AppConfig(BaseModel):
    """
    Root configuration.

    All sections are optional in the JSON file and fall back to defaults.
    """

    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    swap: SwapConfig = Field(default_factory=SwapConfig)
    vision: VisionServerConfig = Field(default_factory=VisionServerConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def check_ports(self) -> "AppConfig":
        """The vision server needs its own port."""
        if self.vision.enabled and self.vision.port == self.supervisor.port:
            raise ValueError(
                f"vision.port and supervisor.port are both {self.vision.port}"
            )
        return self


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load and validate configuration from JSON file.

    Args:
        path: Path to config.json file. If None, uses CONFIG_PATH env var
              or defaults to 'config.json' in working directory.

    Returns:
        Validated AppConfig instance. A missing default config file yields
        the built-in defaults; a missing explicit path is an error.

    Raises:
        ConfigurationError: If the file is missing, not JSON or invalid
    """
    explicit = path is not None or "CONFIG_PATH" in os.environ
    if path is None:
        path = os.getenv("CONFIG_PATH", "config.json")

    if not Path(path).exists():
        if explicit:
            raise ConfigurationError(f"Config file not found: '{path}'")
        logger.info(f"No config file at '{path}', using defaults")
        return AppConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file: {e}") from e

    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Config validation failed: {e}") from e

    logger.info(f"Configuration loaded from '{path}'")
    logger.info(
        f"llama-server port {config.supervisor.port}, "
        f"strategy {config.supervisor.vram_strategy.value}, "
        f"models in {config.supervisor.models_dir}"
    )
    return config
