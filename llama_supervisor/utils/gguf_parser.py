"""
GGUF Header Reader

Reads just enough of a GGUF model file to learn its architecture and layer
count, without the official gguf library. The layer count makes partial GPU
offload more accurate than guessing from the file size.

GGUF Layout (little endian):
    - Magic 'GGUF' (4 bytes), version (uint32)
    - Tensor count (uint64), metadata KV count (uint64)
    - Metadata: key (uint64 length + utf-8), value type (uint32), value

Reading stops as soon as `<arch>.block_count` is found, so the (large)
tokenizer arrays that follow are normally never touched.

Usage:
    from llama_supervisor.utils.gguf_parser import read_layer_count

    layers = read_layer_count("/models/qwen2.5-7b-q4_k_m.gguf")  # 28 or None
"""

import struct
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional


logger = logging.getLogger(__name__)


GGUF_MAGIC = b"GGUF"

# value type -> struct format for fixed-size scalars
_SCALAR_FORMATS = {
    0: "<B",   # uint8
    1: "<b",   # int8
    2: "<H",   # uint16
    3: "<h",   # int16
    4: "<I",   # uint32
    5: "<i",   # int32
    6: "<f",   # float32
    7: "<?",   # bool
    10: "<Q",  # uint64
    11: "<q",  # int64
    12: "<d",  # float64
}
GGUF_TYPE_STRING = 8
GGUF_TYPE_ARRAY = 9

# Guards against garbage headers (a zero-filled or truncated file)
MAX_KV_COUNT = 1_000_000
MAX_STRING_LENGTH = 1 << 20


@dataclass
class GGUFHeader:
    """Model facts read from a GGUF header."""
    version: int = 0
    architecture: str = "unknown"
    name: str = ""
    block_count: int = 0


class GGUFReader:
    """Minimal streaming reader for the GGUF metadata section."""

    def __init__(self, file_path: str):
        self.file_path = Path(file_path)

    def _read(self, f: BinaryIO, fmt: str) -> Any:
        size = struct.calcsize(fmt)
        data = f.read(size)
        if len(data) != size:
            raise ValueError("Unexpected end of GGUF header")
        return struct.unpack(fmt, data)[0]

    def _read_string(self, f: BinaryIO) -> str:
        length = self._read(f, "<Q")
        if length > MAX_STRING_LENGTH:
            raise ValueError(f"Implausible GGUF string length: {length}")
        return f.read(length).decode("utf-8", errors="replace")

    def _read_value(self, f: BinaryIO, value_type: int) -> Any:
        if value_type == GGUF_TYPE_STRING:
            return self._read_string(f)
        if value_type == GGUF_TYPE_ARRAY:
            item_type = self._read(f, "<I")
            count = self._read(f, "<Q")
            self._skip_array(f, item_type, count)
            return None
        fmt = _SCALAR_FORMATS.get(value_type)
        if fmt is None:
            raise ValueError(f"Unknown GGUF value type: {value_type}")
        return self._read(f, fmt)

    def _skip_array(self, f: BinaryIO, item_type: int, count: int) -> None:
        fmt = _SCALAR_FORMATS.get(item_type)
        if fmt is not None:
            f.seek(struct.calcsize(fmt) * count, 1)
            return
        for _ in range(count):
            self._read_value(f, item_type)

    def read_header(self) -> GGUFHeader:
        """
        Parse the header up to the layer count.

        Returns:
            GGUFHeader (block_count is 0 if the key is absent)

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is not a valid GGUF file
        """
        header = GGUFHeader()

        with open(self.file_path, "rb") as f:
            if f.read(4) != GGUF_MAGIC:
                raise ValueError(f"Not a GGUF file: {self.file_path}")

            header.version = self._read(f, "<I")
            if header.version < 2:
                raise ValueError(f"Unsupported GGUF version: {header.version}")

            self._read(f, "<Q")  # tensor count
            kv_count = self._read(f, "<Q")
            if kv_count > MAX_KV_COUNT:
                raise ValueError(f"Implausible GGUF metadata count: {kv_count}")

            for _ in range(kv_count):
                key = self._read_string(f)
                value = self._read_value(f, self._read(f, "<I"))

                if key == "general.architecture":
                    header.architecture = str(value)
                elif key == "general.name":
                    header.name = str(value)
                elif key.endswith(".block_count") and isinstance(value, int):
                    header.block_count = value
                    break

        return header


def read_layer_count(model_path: str) -> Optional[int]:
    """
    Get the transformer block count of a GGUF model.

    Returns:
        Layer count, or None if the file cannot be parsed
    """
    try:
        header = GGUFReader(model_path).read_header()
    except (OSError, ValueError, struct.error) as e:
        logger.debug(f"[GGUF] No layer count for {model_path}: {e}")
        return None

    if header.block_count <= 0:
        return None
    logger.debug(
        f"[GGUF] {Path(model_path).name}: arch={header.architecture} "
        f"layers={header.block_count}"
    )
    return header.block_count
