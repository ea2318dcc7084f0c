"""
Lifecycle Package

Application lifecycle management:
- Component container (dependencies.py)
- Startup initialization (startup.py)
- Graceful shutdown (shutdown.py)
"""

from .dependencies import (
    AppContainer,
    get_container,
    set_container,
    is_shutting_down,
)

from .startup import startup_handler
from .shutdown import shutdown_handler

__all__ = [
    "AppContainer",
    "get_container",
    "set_container",
    "is_shutting_down",
    "startup_handler",
    "shutdown_handler",
]
