"""
Runtime Asset Discovery Module

Locates the llama-server binary and the directory holding its shared
libraries (libggml, libmtmd). The result is a RuntimeAssets value that is
passed into ProcessSupervisor and VisionServer; nothing here keeps global
state.

Search Order (binary):
    1. Explicitly configured binary path
    2. <data_dir>/bin/llama-server (setup download)
    3. <install_root>/bin/llama-server (bundled next to the application)
    4. Not found

Library Directory:
    The configured library path, else the first of <data_dir>/bin and
    <install_root>/bin containing libmtmd.so* or libggml.so*, else the
    binary's own directory.

Usage:
    assets = discover_runtime_assets(data_dir="/home/me/.llama-supervisor")
    if assets.found:
        print(assets.binary_path, assets.library_path)
"""

import os
import sys
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional


logger = logging.getLogger(__name__)


BINARY_NAME = "llama-server.exe" if sys.platform == "win32" else "llama-server"
LIBRARY_PATTERNS = ("libmtmd.so*", "libggml.so*")

# Repository/installation root, used for bundled bin/ directories
INSTALL_ROOT = Path(__file__).resolve().parent.parent.parent


@dataclass
class RuntimeAssets:
    """
    Paths needed to run llama-server.

    Attributes:
        binary_path: llama-server executable ("" if not found)
        library_path: Directory added to LD_LIBRARY_PATH and used as cwd
        searched: Binary locations checked during discovery
    """
    binary_path: str = ""
    library_path: str = ""
    searched: List[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.binary_path)

    def environment(self, base: Optional[dict] = None) -> dict:
        """Process environment with the library directory prepended to LD_LIBRARY_PATH."""
        env = dict(os.environ if base is None else base)
        if self.library_path:
            existing = env.get("LD_LIBRARY_PATH", "")
            env["LD_LIBRARY_PATH"] = (
                f"{self.library_path}{os.pathsep}{existing}" if existing else self.library_path
            )
        return env


def has_llama_libraries(directory: Path) -> bool:
    """True if the directory contains llama.cpp shared libraries."""
    if not directory.is_dir():
        return False
    return any(any(directory.glob(pattern)) for pattern in LIBRARY_PATTERNS)


def _is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def discover_runtime_assets(
    data_dir: str = "",
    binary_path: str = "",
    library_path: str = "",
    install_root: Optional[str] = None,
    backend: str = "auto"
) -> RuntimeAssets:
    """
    Find llama-server and its libraries.

    Args:
        data_dir: Application data directory (contains bin/)
        binary_path: Explicitly configured binary, checked first
        library_path: Explicitly configured library directory
        install_root: Directory whose bin/ holds a bundled binary
        backend: Binary variant; anything but "auto" prefers bin/<backend>/

    Returns:
        RuntimeAssets (binary_path is "" if nothing was found)
    """
    root = Path(install_root) if install_root else INSTALL_ROOT
    bin_dirs: List[Path] = []
    if data_dir:
        if backend and backend != "auto":
            bin_dirs.append(Path(data_dir) / "bin" / backend)
        bin_dirs.append(Path(data_dir) / "bin")
    if backend and backend != "auto":
        bin_dirs.append(root / "bin" / backend)
    bin_dirs.append(root / "bin")

    candidates: List[Path] = []
    if binary_path:
        candidates.append(Path(binary_path))
    candidates.extend(d / BINARY_NAME for d in bin_dirs)

    assets = RuntimeAssets(searched=[str(c) for c in candidates])

    for candidate in candidates:
        if _is_executable_file(candidate):
            assets.binary_path = str(candidate)
            break

    if not assets.found:
        logger.warning(
            f"[Runtime] llama-server not found (searched: {', '.join(assets.searched)})"
        )
        return assets

    if library_path:
        assets.library_path = library_path
    else:
        for directory in bin_dirs:
            if has_llama_libraries(directory):
                assets.library_path = str(directory)
                break
        else:
            assets.library_path = str(Path(assets.binary_path).parent)
            logger.debug(
                f"[Runtime] No llama libraries found, using binary directory "
                f"{assets.library_path}"
            )

    logger.info(
        f"[Runtime] llama-server: {assets.binary_path} (libraries: {assets.library_path})"
    )
    return assets
