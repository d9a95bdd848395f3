"""Weight store access for Tiny YOLOv2 parameter loading."""

from .store import WeightBuffer, WeightStore, dequantize, load_weight_map, resolve_weights_path
from .store_common import (
    DuplicateEntryError,
    MissingEntryError,
    ParamExtractionError,
    ParamMapping,
    QuantizationSpec,
    RankMismatchError,
    ReleasedBufferError,
    WeightStoreError,
    WeightStoreFormatError,
)

__all__ = [
    "DuplicateEntryError",
    "MissingEntryError",
    "ParamExtractionError",
    "ParamMapping",
    "QuantizationSpec",
    "RankMismatchError",
    "ReleasedBufferError",
    "WeightBuffer",
    "WeightStore",
    "WeightStoreError",
    "WeightStoreFormatError",
    "dequantize",
    "load_weight_map",
    "resolve_weights_path",
]
