"""Lazy, rank-aware access to safetensors weight files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

import numpy as np
from safetensors import SafetensorError, safe_open

from .store_common import (
    DEFAULT_WEIGHTS_FILENAME,
    QUANTIZED_DTYPES,
    SAFETENSORS_SUFFIX,
    QuantizationSpec,
    ReleasedBufferError,
    WeightEntryHeader,
    WeightStoreFormatError,
    parse_quantization_metadata,
    read_safetensors_index,
)

logger = logging.getLogger(__name__)

_SAFE_TENSOR_NUMPY_DTYPES = {
    "F64": np.float64,
    "F32": np.float32,
    "F16": np.float16,
    "I64": np.int64,
    "U64": np.uint64,
    "I32": np.int32,
    "U32": np.uint32,
    "I16": np.int16,
    "U16": np.uint16,
    "I8": np.int8,
    "U8": np.uint8,
    "BOOL": np.bool_,
}
_NUMPY_SAFE_TENSOR_DTYPES = {
    np.dtype(value).str: key for key, value in _SAFE_TENSOR_NUMPY_DTYPES.items()
}


def _decode_bf16(data: memoryview, shape: Sequence[int]) -> np.ndarray:
    raw = np.frombuffer(data, dtype=np.uint16).astype(np.uint32)
    raw <<= 16
    return raw.view(np.float32).reshape(tuple(shape))


def _decode_payload(dtype: str, shape: Sequence[int], data: memoryview) -> np.ndarray:
    if dtype == "BF16":
        return _decode_bf16(data, shape)
    np_dtype = _SAFE_TENSOR_NUMPY_DTYPES.get(dtype)
    if np_dtype is None:
        raise WeightStoreFormatError(f"Unsupported safetensors dtype: {dtype}")
    return np.frombuffer(data, dtype=np_dtype).reshape(tuple(shape))


def dequantize(values: np.ndarray, spec: QuantizationSpec) -> np.ndarray:
    """Map quantised integers back onto float32 weights."""

    return values.astype(np.float32) * np.float32(spec.scale) + np.float32(spec.min)


class WeightBuffer:
    """Named handle over one buffer of a weight store.

    ``name``, ``dtype`` and ``shape`` are known up front; the payload is only
    decoded the first time :attr:`array` is read. Releasing the handle drops
    the decoded payload and any reader reference so its memory can be
    reclaimed.
    """

    __slots__ = ("_name", "_dtype", "_shape", "_loader", "_array", "_released")

    def __init__(
        self,
        name: str,
        dtype: str,
        shape: Sequence[int],
        *,
        loader: Optional[Callable[[], np.ndarray]] = None,
        array: Optional[np.ndarray] = None,
    ) -> None:
        if loader is None and array is None:
            raise ValueError(f"Weight buffer {name!r} needs either a loader or an array")
        self._name = name
        self._dtype = dtype
        self._shape = tuple(int(dim) for dim in shape)
        self._loader = loader
        self._array = array
        self._released = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def dtype(self) -> str:
        return self._dtype

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @property
    def rank(self) -> int:
        return len(self._shape)

    @property
    def size(self) -> int:
        count = 1
        for dim in self._shape:
            count *= dim
        return count

    @property
    def released(self) -> bool:
        return self._released

    @property
    def materialized(self) -> bool:
        return self._array is not None

    @property
    def array(self) -> np.ndarray:
        if self._released:
            raise ReleasedBufferError(self._name)
        if self._array is None:
            assert self._loader is not None
            self._array = self._loader()
            self._loader = None
        return self._array

    def release(self) -> bool:
        """Drop the payload; returns ``False`` when already released."""

        if self._released:
            return False
        self._released = True
        self._array = None
        self._loader = None
        return True

    def __array__(self, dtype=None, copy=None):
        arr = self.array
        if dtype is not None and arr.dtype != dtype:
            return arr.astype(dtype)
        return arr

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        state = "released" if self._released else self._dtype
        return f"WeightBuffer({self._name!r}, shape={self._shape}, {state})"


class WeightStore(Mapping[str, WeightBuffer]):
    """Read-only name to :class:`WeightBuffer` mapping.

    Releasing buffers is the only mutation a store supports; released names
    remain visible so that callers can audit what was reclaimed.
    """

    def __init__(
        self,
        buffers: Mapping[str, WeightBuffer],
        *,
        path: Optional[Path] = None,
        metadata: Optional[Mapping[str, str]] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> None:
        self._buffers: Dict[str, WeightBuffer] = dict(buffers)
        self._path = path
        self._metadata = dict(metadata or {})
        self._on_close = on_close

    @classmethod
    def open(cls, path: Path) -> "WeightStore":
        """Index ``path`` and expose its entries as lazy buffers."""

        index, metadata, base_offset = read_safetensors_index(path)
        quantization = parse_quantization_metadata(metadata)
        _check_quantization(index, quantization)

        reader_cm: Any = None
        reader: Any = None
        try:
            reader_cm = safe_open(str(path), framework="numpy")
            reader = reader_cm.__enter__()
        except SafetensorError as exc:
            if "bf16" not in str(exc).lower():
                raise
            logger.debug("safe_open fallback for %s due to unsupported dtype: %s", path, exc)
            reader_cm = None
            reader = None

        def make_loader(entry: WeightEntryHeader) -> Callable[[], np.ndarray]:
            def load() -> np.ndarray:
                values = None
                if reader is not None and entry.dtype != "BF16":
                    values = reader.get_tensor(entry.name)
                if values is None:
                    values = _read_entry(path, base_offset, entry)
                spec = quantization.get(entry.name)
                if spec is not None:
                    values = dequantize(values, spec)
                logger.debug("Materialised %s %s from %s", entry.name, entry.shape, path)
                return values

            return load

        buffers = {
            name: WeightBuffer(name, entry.dtype, entry.shape, loader=make_loader(entry))
            for name, entry in index.items()
        }

        def close_reader() -> None:
            if reader_cm is not None:
                reader_cm.__exit__(None, None, None)

        logger.info("Opened weight store %s (%d entries)", path, len(buffers))
        return cls(buffers, path=path, metadata=metadata, on_close=close_reader)

    @classmethod
    def from_arrays(
        cls,
        arrays: Mapping[str, Any],
        *,
        quantization: Optional[Mapping[str, QuantizationSpec]] = None,
    ) -> "WeightStore":
        """Build an in-memory store, e.g. for weights produced in-process."""

        specs = dict(quantization or {})
        buffers: Dict[str, WeightBuffer] = {}
        for name, value in arrays.items():
            array = np.asarray(value)
            dtype = _NUMPY_SAFE_TENSOR_DTYPES.get(array.dtype.str, str(array.dtype))
            spec = specs.pop(name, None)
            if spec is not None:
                if QUANTIZED_DTYPES[spec.dtype] != dtype:
                    raise WeightStoreFormatError(
                        f"Quantized entry {name!r} is stored as {dtype}, expected {spec.dtype}"
                    )
                array = dequantize(array, spec)
            buffers[name] = WeightBuffer(name, dtype, array.shape, array=array)
        if specs:
            raise WeightStoreFormatError(
                "Quantization metadata references unknown entries: " + ", ".join(sorted(specs))
            )
        return cls(buffers)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def metadata(self) -> Mapping[str, str]:
        return dict(self._metadata)

    @property
    def released_names(self) -> Tuple[str, ...]:
        return tuple(name for name, buffer in self._buffers.items() if buffer.released)

    @property
    def live_names(self) -> Tuple[str, ...]:
        return tuple(name for name, buffer in self._buffers.items() if not buffer.released)

    def release(self, name: str) -> bool:
        released = self._buffers[name].release()
        if released:
            logger.debug("Released weight buffer %s", name)
        return released

    def close(self) -> None:
        """Close the backing reader; payloads not yet decoded become released."""

        if self._on_close is None:
            return
        self._on_close()
        self._on_close = None
        for buffer in self._buffers.values():
            if not buffer.materialized:
                buffer.release()

    def __enter__(self) -> "WeightStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def __getitem__(self, key: str) -> WeightBuffer:
        return self._buffers[key]

    def __contains__(self, key: object) -> bool:
        return key in self._buffers

    def __iter__(self) -> Iterator[str]:
        return iter(self._buffers)

    def __len__(self) -> int:
        return len(self._buffers)


def _check_quantization(
    index: Mapping[str, WeightEntryHeader],
    quantization: Mapping[str, QuantizationSpec],
) -> None:
    for name, spec in quantization.items():
        entry = index.get(name)
        if entry is None:
            logger.warning("Quantization metadata for %s has no matching entry", name)
            continue
        if entry.dtype != QUANTIZED_DTYPES[spec.dtype]:
            raise WeightStoreFormatError(
                f"Quantized entry {name!r} is stored as {entry.dtype}, expected {spec.dtype}"
            )


def _read_entry(path: Path, base_offset: int, entry: WeightEntryHeader) -> np.ndarray:
    length = entry.byte_len
    buffer = bytearray(length)
    with path.open("rb") as handle:
        handle.seek(base_offset + entry.data_offsets[0])
        read = handle.readinto(memoryview(buffer))
    if read != length:
        raise WeightStoreFormatError(f"Unexpected end of safetensors payload for {entry.name!r}")
    return _decode_payload(entry.dtype, entry.shape, memoryview(buffer))


def resolve_weights_path(uri: str | Path, default_model_name: str = "") -> Path:
    """Turn ``uri`` into the path of a safetensors weight file.

    Directories resolve to ``<default_model_name>.safetensors`` inside them,
    or ``model.safetensors`` when no default name is given.
    """

    if isinstance(uri, Path):
        path = uri
    else:
        parsed = urlparse(uri)
        if parsed.scheme == "file":
            path = Path(unquote(parsed.path))
        elif not parsed.scheme or len(parsed.scheme) == 1:
            # bare path or Windows drive letter
            path = Path(uri)
        else:
            raise ValueError(f"Unsupported weight store URI scheme: {parsed.scheme!r}")
    path = path.expanduser()
    if path.is_dir():
        filename = (
            f"{default_model_name}{SAFETENSORS_SUFFIX}"
            if default_model_name
            else DEFAULT_WEIGHTS_FILENAME
        )
        path = path / filename
    if not path.exists():
        message = f"Unable to locate weight file {str(path)!r} (from {str(uri)!r})"
        logger.error(message)
        raise FileNotFoundError(message)
    return path


def load_weight_map(uri: str | Path, default_model_name: str = "") -> WeightStore:
    return WeightStore.open(resolve_weights_path(uri, default_model_name))


__all__ = [
    "WeightBuffer",
    "WeightStore",
    "dequantize",
    "load_weight_map",
    "resolve_weights_path",
]
