"""
Model directory queries.

Finds .gguf files below a models directory (recursively, so `library/`,
`vision/` and `custom/` subdirectories are included), picks the largest
model, resolves user-typed model names and locates multimodal projectors.

Name Resolution Order (find_model_by_name):
    1. Exact file name
    2. Case-insensitive file name
    3. Case-insensitive substring ("llama-3.1")
    4. Keywords ("meta llama 3.1 8b"): every word must appear in the name

Usage:
    from llama_supervisor.utils.model_files import list_models, find_model_by_name

    models = list_models("/data/models")
    path = find_model_by_name("/data/models", "qwen 7b")
"""

import re
import logging
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass
from typing import List, Optional

from ..core.errors import ModelNotFoundError


logger = logging.getLogger(__name__)


GGUF_SUFFIX = ".gguf"

# Quantization tags replaced by the projector tag in "<model>-mmproj" lookups
_QUANT_TAGS = ("q4_k_m", "q5_k_m", "q8_0")


@dataclass
class ModelFile:
    """A .gguf file found on disk."""
    name: str
    path: str
    size: int
    modified: datetime

    @property
    def size_gb(self) -> float:
        return self.size / (1024 ** 3)


def list_models(models_dir: str) -> List[ModelFile]:
    """
    List all .gguf files below a directory.

    Unreadable entries are skipped. A missing directory yields [].
    """
    if not models_dir:
        return []

    root = Path(models_dir)
    if not root.is_dir():
        return []

    models = []
    for path in sorted(root.rglob("*")):
        if not path.name.lower().endswith(GGUF_SUFFIX):
            continue
        try:
            if not path.is_file():
                continue
            stat = path.stat()
        except OSError as e:
            logger.debug(f"Skipping {path}: {e}")
            continue

        models.append(ModelFile(
            name=path.name,
            path=str(path),
            size=stat.st_size,
            modified=datetime.fromtimestamp(stat.st_mtime),
        ))
    return models


def largest_model(models_dir: str) -> ModelFile:
    """
    Get the largest model file (projectors excluded).

    Raises:
        ModelNotFoundError: If the directory holds no models
    """
    candidates = [
        m for m in list_models(models_dir)
        if "mmproj" not in m.name.lower()
    ]
    if not candidates:
        raise ModelNotFoundError(models_dir)
    return max(candidates, key=lambda m: m.size)


def _keywords(text: str) -> List[str]:
    return [k for k in re.split(r"[\s_]+", text.lower()) if k]


def find_model_by_name(models_dir: str, name: str) -> str:
    """
    Resolve a user-supplied model name to a file path.

    Args:
        models_dir: Directory searched recursively
        name: File name, fragment or space-separated keywords

    Returns:
        Absolute path of the first match

    Raises:
        ModelNotFoundError: If nothing matches
    """
    models = list_models(models_dir)
    query = name.strip()
    if not query:
        raise ModelNotFoundError(name)
    lowered = query.lower()

    for model in models:
        if model.name == query:
            return model.path

    for model in models:
        if model.name.lower() == lowered:
            return model.path

    for model in models:
        if lowered in model.name.lower():
            return model.path

    keywords = _keywords(query)
    for model in models:
        model_name = model.name.lower()
        if keywords and all(k in model_name for k in keywords):
            return model.path

    raise ModelNotFoundError(name)


def find_mmproj_for_model(model_path: str, models_dir: str = "") -> Optional[str]:
    """
    Locate the multimodal projector belonging to a vision model.

    Checks well-known projector names in the model's directory and in
    models_dir, then falls back to any *mmproj*.gguf in either.
    """
    model = Path(model_path)
    base_name = model.name.lower()
    if base_name.endswith(GGUF_SUFFIX):
        base_name = base_name[:-len(GGUF_SUFFIX)]

    candidates = [
        "mmproj.gguf",
        "mmproj-f16.gguf",
        "mmproj-f32.gguf",
        f"{base_name}-mmproj.gguf",
        f"{base_name}-mmproj-f16.gguf",
    ]
    for tag in _QUANT_TAGS:
        if tag in base_name:
            candidates.append(base_name.replace(tag, "mmproj-f16", 1) + GGUF_SUFFIX)

    search_dirs = [model.parent]
    if models_dir and Path(models_dir) != model.parent:
        search_dirs.append(Path(models_dir))

    for directory in search_dirs:
        for candidate in candidates:
            path = directory / candidate
            if path.is_file():
                return str(path)

    for directory in search_dirs:
        matches = sorted(directory.glob("*mmproj*.gguf"))
        if matches:
            return str(matches[0])

    return None
