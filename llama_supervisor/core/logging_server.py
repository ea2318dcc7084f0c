"""
Structured Logging Configuration Module

This module configures logging for the supervisor and gives each child
process (primary llama-server, vision llama-server) its own output file.

Features:
    - Structured JSON format for machine-readable logs
    - Human-readable format with milliseconds as alternative
    - Console and file handlers
    - Suppression for noisy libraries (httpx, httpcore)

Log Fields (Structured Mode):
    - timestamp, level, logger, message, module, function, line
    - model: (optional) Model file name
    - port: (optional) llama-server port
    - role: (optional) Active model role
    - exception: (optional) Exception traceback

Log Files:
    - logs/supervisor.log: Supervisor logs
    - logs/runners/<name>_<port>.log: Raw stdout/stderr of each llama-server

Usage:
    from llama_supervisor.core.logging_server import setup_logging

    setup_logging(log_level=logging.INFO, use_structured=False)
"""

import sys
import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional


# Directory used for child-process output, updated by setup_logging()
_log_root = Path("logs")


class StructuredFormatter(logging.Formatter):
    """Formats log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        for field in ("model", "port", "role"):
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """
    Simple human-readable log formatter with milliseconds.

    Format: [TIMESTAMP.mmm] LEVEL:LOGGER:MESSAGE
    """

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s:%(name)s:%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    def formatTime(self, record: logging.LogRecord, datefmt: str = None) -> str:
        ct = datetime.fromtimestamp(record.created)
        s = ct.strftime(datefmt or "%Y-%m-%d %H:%M:%S")
        return f"{s}.{int(record.msecs):03d}"


def setup_logging(
    log_level: int = logging.INFO,
    use_structured: bool = False,
    log_dir: Optional[str] = None
) -> None:
    """
    Configure supervisor logging.

    Args:
        log_level: Minimum log level to capture (default: INFO)
        use_structured: Use JSON format if True, simple format if False
        log_dir: Directory for log files (default: "logs")
    """
    global _log_root

    formatter = StructuredFormatter() if use_structured else SimpleFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    _log_root = Path(log_dir) if log_dir else Path("logs")
    _log_root.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(
        _log_root / "supervisor.log",
        encoding="utf-8"
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    _suppress_noisy_loggers()


def _suppress_noisy_loggers() -> None:
    """Suppress verbose logging from third-party libraries."""
    for logger_name in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def runner_log_path(name: str, port: int) -> Path:
    """
    Get the output file for a llama-server child process.

    Args:
        name: Process name (e.g. "llama-server", "vision")
        port: Port the process binds to

    Returns:
        Path at logs/runners/<name>_<port>.log (directory created)
    """
    runner_log_dir = _log_root / "runners"
    runner_log_dir.mkdir(parents=True, exist_ok=True)
    return runner_log_dir / f"{name}_{port}.log"
