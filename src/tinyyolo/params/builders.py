"""Compose entry extraction into the convolution sub-structures of the net."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .extract import WeightEntryExtractor
from .types import BatchNorm, ConvParams, ConvWithBatchNorm, SeparableConvParams

SeparableConvExtractor = Callable[[str], SeparableConvParams]
SeparableConvFactory = Callable[[WeightEntryExtractor], SeparableConvExtractor]


def load_separable_conv_params_factory(
    extract_weight_entry: WeightEntryExtractor,
) -> SeparableConvExtractor:
    def extract_separable_conv_params(prefix: str) -> SeparableConvParams:
        depthwise_filter = extract_weight_entry(f"{prefix}/depthwise_filter", 4)
        pointwise_filter = extract_weight_entry(f"{prefix}/pointwise_filter", 4)
        bias = extract_weight_entry(f"{prefix}/bias", 1)
        return SeparableConvParams(depthwise_filter, pointwise_filter, bias)

    return extract_separable_conv_params


@dataclass(frozen=True)
class Extractors:
    extract_conv_params: Callable[[str], ConvParams]
    extract_batch_norm_params: Callable[[str], BatchNorm]
    extract_conv_with_batch_norm_params: Callable[[str], ConvWithBatchNorm]
    extract_separable_conv_params: SeparableConvExtractor


def extractors_factory(
    extract_weight_entry: WeightEntryExtractor,
    separable_conv_factory: Optional[SeparableConvFactory] = None,
) -> Extractors:
    """Bind the structural builders to one extractor (and so one mapping log)."""

    def extract_batch_norm_params(prefix: str) -> BatchNorm:
        sub = extract_weight_entry(f"{prefix}/sub", 1)
        truediv = extract_weight_entry(f"{prefix}/truediv", 1)
        return BatchNorm(sub, truediv)

    def extract_conv_params(prefix: str) -> ConvParams:
        filters = extract_weight_entry(f"{prefix}/filters", 4)
        bias = extract_weight_entry(f"{prefix}/bias", 1)
        return ConvParams(filters, bias)

    def extract_conv_with_batch_norm_params(prefix: str) -> ConvWithBatchNorm:
        conv = extract_conv_params(f"{prefix}/conv")
        bn = extract_batch_norm_params(f"{prefix}/bn")
        return ConvWithBatchNorm(conv, bn)

    factory = separable_conv_factory or load_separable_conv_params_factory
    return Extractors(
        extract_conv_params=extract_conv_params,
        extract_batch_norm_params=extract_batch_norm_params,
        extract_conv_with_batch_norm_params=extract_conv_with_batch_norm_params,
        extract_separable_conv_params=factory(extract_weight_entry),
    )


__all__ = [
    "Extractors",
    "SeparableConvExtractor",
    "SeparableConvFactory",
    "extractors_factory",
    "load_separable_conv_params_factory",
]
