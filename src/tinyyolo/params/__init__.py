"""Tiny YOLOv2 parameter tree loading."""

from .assemble import StageKind, Topology, TopologyFamily, assemble_net_params, resolve_topology
from .builders import Extractors, extractors_factory, load_separable_conv_params_factory
from .extract import WeightEntryExtractor, extract_weight_entry_factory
from .loader import LoadResult, load_quantized_params, load_quantized_params_from_store
from .reclaim import dispose_unused_weight_tensors
from .types import (
    ABSENT,
    Absent,
    BatchNorm,
    ConvParams,
    ConvWithBatchNorm,
    NetParams,
    SeparableConvParams,
)

__all__ = [
    "ABSENT",
    "Absent",
    "BatchNorm",
    "ConvParams",
    "ConvWithBatchNorm",
    "Extractors",
    "LoadResult",
    "NetParams",
    "SeparableConvParams",
    "StageKind",
    "Topology",
    "TopologyFamily",
    "WeightEntryExtractor",
    "assemble_net_params",
    "dispose_unused_weight_tensors",
    "extract_weight_entry_factory",
    "extractors_factory",
    "load_quantized_params",
    "load_quantized_params_from_store",
    "load_separable_conv_params_factory",
    "resolve_topology",
]
