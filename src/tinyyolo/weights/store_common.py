"""Shared weight store helpers used by the parameter loader and tooling."""

from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

SAFETENSORS_SUFFIX = ".safetensors"
DEFAULT_WEIGHTS_FILENAME = "model" + SAFETENSORS_SUFFIX
HEADER_LENGTH_BYTES = 8
METADATA_KEY = "__metadata__"
QUANTIZATION_METADATA_KEY = "quantization"
QUANTIZED_DTYPES: Dict[str, str] = {
    "uint8": "U8",
    "uint16": "U16",
}


class WeightStoreError(RuntimeError):
    """Base class for failures raised by a weight store."""


class WeightStoreFormatError(WeightStoreError):
    """Raised when a weight file header or its metadata fails validation."""


class ReleasedBufferError(WeightStoreError):
    """Raised when the data of an already released buffer is requested."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Weight buffer {name!r} has already been released")
        self.name = name


class ParamExtractionError(RuntimeError):
    """Raised when a parameter cannot be extracted from the weight store."""

    def __init__(self, name: str, message: str) -> None:
        super().__init__(message)
        self.name = name


class MissingEntryError(ParamExtractionError):
    def __init__(self, name: str) -> None:
        super().__init__(name, f"Weight store has no entry named {name!r}")


class RankMismatchError(ParamExtractionError):
    def __init__(self, name: str, expected_rank: int, actual_rank: int) -> None:
        super().__init__(
            name,
            f"Expected weight entry {name!r} to be a rank-{expected_rank} tensor, "
            f"got rank {actual_rank}",
        )
        self.expected_rank = expected_rank
        self.actual_rank = actual_rank


class DuplicateEntryError(ParamExtractionError):
    def __init__(self, name: str) -> None:
        super().__init__(name, f"Weight entry {name!r} was already extracted during this load")


@dataclass(frozen=True)
class ParamMapping:
    """Provenance record linking a stored buffer to its place in the tree."""

    original_path: str
    param_path: str

    @property
    def source_name(self) -> str:
        return self.original_path

    @property
    def tree_path(self) -> str:
        return self.param_path

    def to_dict(self) -> Dict[str, str]:
        return {"original_path": self.original_path, "param_path": self.param_path}


@dataclass(frozen=True)
class QuantizationSpec:
    """Affine quantisation parameters: ``value = q * scale + min``."""

    dtype: str
    scale: float
    min: float


@dataclass(frozen=True)
class WeightEntryHeader:
    """Metadata describing a single buffer of a safetensors file."""

    name: str
    dtype: str
    shape: Tuple[int, ...]
    data_offsets: Tuple[int, int]

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def byte_len(self) -> int:
        start, end = self.data_offsets
        return end - start


def parse_header(raw: bytes) -> Tuple[Dict[str, WeightEntryHeader], Dict[str, str]]:
    """Parse the JSON header of a safetensors file.

    Returns the per-entry headers in file order together with the free-form
    ``__metadata__`` mapping (empty when the file carries none).
    """

    try:
        header = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise WeightStoreFormatError("Unable to parse safetensors header") from exc
    if not isinstance(header, dict):
        raise WeightStoreFormatError("Safetensors header must be a JSON object")

    metadata_raw = header.get(METADATA_KEY) or {}
    if not isinstance(metadata_raw, dict):
        raise WeightStoreFormatError("Safetensors metadata must be a JSON object")
    metadata = {str(key): str(value) for key, value in metadata_raw.items()}

    entries: Dict[str, WeightEntryHeader] = {}
    for name, entry in header.items():
        if name == METADATA_KEY:
            continue
        if not isinstance(entry, dict) or not {"dtype", "shape", "data_offsets"}.issubset(entry):
            raise WeightStoreFormatError(f"Malformed header entry for {name!r}")
        try:
            shape = tuple(int(dim) for dim in entry["shape"])
            start, end = (int(offset) for offset in entry["data_offsets"])
        except (TypeError, ValueError) as exc:
            raise WeightStoreFormatError(f"Malformed header entry for {name!r}") from exc
        if end < start:
            raise WeightStoreFormatError(f"Negative payload length for {name!r}")
        entries[name] = WeightEntryHeader(
            name=name,
            dtype=str(entry["dtype"]),
            shape=shape,
            data_offsets=(start, end),
        )
    return entries, metadata


def read_safetensors_index(
    path: Path,
) -> Tuple[Dict[str, WeightEntryHeader], Dict[str, str], int]:
    """Read the header of ``path`` without touching any payload bytes.

    The third element of the result is the absolute offset at which the
    payload section starts.
    """

    with path.open("rb") as handle:
        length_raw = handle.read(HEADER_LENGTH_BYTES)
        if len(length_raw) != HEADER_LENGTH_BYTES:
            raise WeightStoreFormatError(f"Invalid safetensors header in {path}")
        header_len = int.from_bytes(length_raw, "little")
        header_raw = handle.read(header_len)
        if len(header_raw) != header_len:
            raise WeightStoreFormatError(f"Incomplete safetensors header in {path}")
    entries, metadata = parse_header(header_raw)
    return entries, metadata, HEADER_LENGTH_BYTES + header_len


def parse_quantization_metadata(metadata: Mapping[str, str]) -> Dict[str, QuantizationSpec]:
    """Decode the ``quantization`` metadata entry into per-buffer specs."""

    raw = metadata.get(QUANTIZATION_METADATA_KEY)
    if raw is None:
        return {}
    try:
        table: Any = json.loads(raw)
    except ValueError as exc:
        raise WeightStoreFormatError("Unable to parse quantization metadata") from exc
    if not isinstance(table, dict):
        raise WeightStoreFormatError("Quantization metadata must be a JSON object")

    specs: Dict[str, QuantizationSpec] = {}
    for name, entry in table.items():
        if not isinstance(entry, dict):
            raise WeightStoreFormatError(f"Quantization entry for {name!r} must be an object")
        dtype = str(entry.get("dtype", ""))
        if dtype not in QUANTIZED_DTYPES:
            raise WeightStoreFormatError(
                f"Unsupported quantization dtype {dtype!r} for {name!r}"
            )
        try:
            spec = QuantizationSpec(
                dtype=dtype,
                scale=float(entry["scale"]),
                min=float(entry["min"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise WeightStoreFormatError(
                f"Quantization entry for {name!r} needs numeric 'scale' and 'min'"
            ) from exc
        specs[str(name)] = spec
    return specs


def encode_quantization_metadata(specs: Mapping[str, QuantizationSpec]) -> str:
    """Inverse of :func:`parse_quantization_metadata` for producers and tests."""

    return json.dumps(
        {
            name: {"dtype": spec.dtype, "scale": spec.scale, "min": spec.min}
            for name, spec in specs.items()
        },
        sort_keys=True,
    )


__all__ = [
    "DEFAULT_WEIGHTS_FILENAME",
    "DuplicateEntryError",
    "HEADER_LENGTH_BYTES",
    "METADATA_KEY",
    "MissingEntryError",
    "ParamExtractionError",
    "ParamMapping",
    "QUANTIZATION_METADATA_KEY",
    "QUANTIZED_DTYPES",
    "QuantizationSpec",
    "RankMismatchError",
    "ReleasedBufferError",
    "SAFETENSORS_SUFFIX",
    "WeightEntryHeader",
    "WeightStoreError",
    "WeightStoreFormatError",
    "encode_quantization_metadata",
    "parse_header",
    "parse_quantization_metadata",
    "read_safetensors_index",
]
