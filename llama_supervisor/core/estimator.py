"""
Resource Estimation Module

Pure functions that turn model file sizes into VRAM requirements, GPU
layer counts and swap-time estimates. No GPU access happens here: callers
pass in the numbers they got from the VRAM service, so every decision is
deterministic and easy to test.

Estimation Rules:
    - VRAM: file_size_mb * 1.2 + 1024 MB (KV cache/context + runtime overhead)
    - Layer count: GGUF block_count when readable, else a size bucket table
    - GPU layers: 99 (all) when the model fits, else scaled by available/required

Usage:
    from llama_supervisor.core.estimator import estimate_model_vram, optimal_gpu_layers

    required = estimate_model_vram("/models/qwen2.5-7b-q4_k_m.gguf")
    layers = optimal_gpu_layers(model_path, required, available_mb=3500)
"""

import os
import logging
from typing import Optional

from ..utils.gguf_parser import read_layer_count


logger = logging.getLogger(__name__)


MB = 1024 * 1024
GB = 1024 * MB

ALL_LAYERS = 99
VRAM_OVERHEAD_FACTOR = 1.2
VRAM_FIXED_OVERHEAD_MB = 1024
DEFAULT_VRAM_ESTIMATE_MB = 6000
DEFAULT_SWAP_SECONDS = 15

# (upper bound in bytes, value); the last entry applies to anything larger
LAYER_BUCKETS = [
    (3 * GB, 24),
    (6 * GB, 32),
    (10 * GB, 40),
    (25 * GB, 48),
    (None, 80),
]

SWAP_SECONDS_BUCKETS = [
    (3 * GB, 8),
    (6 * GB, 12),
    (10 * GB, 18),
    (None, 25),
]


def _bucket(size_bytes: int, table) -> int:
    for limit, value in table:
        if limit is None or size_bytes < limit:
            return value
    return table[-1][1]


def estimate_vram_mb(file_size_bytes: int) -> int:
    """
    Conservative VRAM requirement for a model file.

    Args:
        file_size_bytes: Size of the .gguf file

    Returns:
        Required VRAM in MB. estimate_vram_mb(0) == 1024.
    """
    size_mb = max(0, file_size_bytes) // MB
    return int(size_mb * VRAM_OVERHEAD_FACTOR) + VRAM_FIXED_OVERHEAD_MB


def estimate_model_vram(model_path: str) -> int:
    """VRAM requirement for a model on disk, 6000 MB if it cannot be stat'ed."""
    try:
        size = os.path.getsize(model_path)
    except OSError:
        logger.debug(f"[Estimator] Cannot stat {model_path}, assuming {DEFAULT_VRAM_ESTIMATE_MB} MB")
        return DEFAULT_VRAM_ESTIMATE_MB
    return estimate_vram_mb(size)


def estimate_total_layers(file_size_bytes: int) -> int:
    """Approximate layer count from the file size bucket."""
    return _bucket(file_size_bytes, LAYER_BUCKETS)


def estimate_swap_seconds(file_size_bytes: Optional[int]) -> int:
    """Rough seconds a swap to this model takes (UI progress only)."""
    if file_size_bytes is None:
        return DEFAULT_SWAP_SECONDS
    return _bucket(file_size_bytes, SWAP_SECONDS_BUCKETS)


def estimate_model_swap_seconds(model_path: str) -> int:
    try:
        return estimate_swap_seconds(os.path.getsize(model_path))
    except OSError:
        return estimate_swap_seconds(None)


def model_layer_count(model_path: str) -> int:
    """
    Total layers of a model.

    Uses the GGUF header's block_count when the file can be parsed and
    falls back to the size bucket table otherwise.
    """
    layers = read_layer_count(model_path)
    if layers:
        return layers

    try:
        size = os.path.getsize(model_path)
    except OSError:
        size = 0
    return estimate_total_layers(size)


def optimal_gpu_layers(
    model_path: str,
    required_mb: int,
    available_mb: int,
    layer_count: Optional[int] = None
) -> int:
    """
    GPU layers that fit into the available VRAM.

    Args:
        model_path: Model file (used for the layer count)
        required_mb: Estimated VRAM requirement
        available_mb: VRAM usable for this model
        layer_count: Known total layers (skips reading the model)

    Returns:
        99 if the model fits completely, otherwise a proportional layer
        count in [1, 99].
    """
    if available_mb >= required_mb:
        return ALL_LAYERS

    total_layers = layer_count or model_layer_count(model_path)
    ratio = min(1.0, max(0, available_mb) / required_mb)
    layers = int(total_layers * ratio)

    return max(1, min(ALL_LAYERS, layers))
