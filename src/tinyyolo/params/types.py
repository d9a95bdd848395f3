"""Parameter tree types for the Tiny YOLOv2 network."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Dict, Iterator, Tuple, Union

from ..weights.store import WeightBuffer


@dataclass(frozen=True)
class ConvParams:
    filters: WeightBuffer
    bias: WeightBuffer

    def buffers(self, prefix: str) -> Iterator[Tuple[str, WeightBuffer]]:
        yield f"{prefix}/filters", self.filters
        yield f"{prefix}/bias", self.bias


@dataclass(frozen=True)
class BatchNorm:
    """Folded normalisation: ``(x - sub) / truediv``."""

    sub: WeightBuffer
    truediv: WeightBuffer

    @property
    def shift(self) -> WeightBuffer:
        return self.sub

    @property
    def scale(self) -> WeightBuffer:
        return self.truediv

    def buffers(self, prefix: str) -> Iterator[Tuple[str, WeightBuffer]]:
        yield f"{prefix}/sub", self.sub
        yield f"{prefix}/truediv", self.truediv


@dataclass(frozen=True)
class ConvWithBatchNorm:
    conv: ConvParams
    bn: BatchNorm

    @property
    def norm(self) -> BatchNorm:
        return self.bn

    def buffers(self, prefix: str) -> Iterator[Tuple[str, WeightBuffer]]:
        yield from self.conv.buffers(f"{prefix}/conv")
        yield from self.bn.buffers(f"{prefix}/bn")


@dataclass(frozen=True)
class SeparableConvParams:
    depthwise_filter: WeightBuffer
    pointwise_filter: WeightBuffer
    bias: WeightBuffer

    def buffers(self, prefix: str) -> Iterator[Tuple[str, WeightBuffer]]:
        yield f"{prefix}/depthwise_filter", self.depthwise_filter
        yield f"{prefix}/pointwise_filter", self.pointwise_filter
        yield f"{prefix}/bias", self.bias


class Absent:
    """Marker for a stage the architecture does not include."""

    __slots__ = ()
    _instance: "Absent | None" = None

    def __new__(cls) -> "Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = Absent()

StageParams = Union[ConvParams, ConvWithBatchNorm, SeparableConvParams]
OptionalStage = Union[StageParams, Absent]


@dataclass(frozen=True)
class NetParams:
    conv0: StageParams
    conv1: StageParams
    conv2: StageParams
    conv3: StageParams
    conv4: StageParams
    conv5: StageParams
    conv6: OptionalStage
    conv7: OptionalStage
    conv8: ConvParams

    def has_stage(self, name: str) -> bool:
        return not isinstance(getattr(self, name), Absent)

    def stages(self) -> Iterator[Tuple[str, StageParams]]:
        """Yield ``(name, params)`` for every present stage in network order."""

        for item in fields(self):
            value = getattr(self, item.name)
            if not isinstance(value, Absent):
                yield item.name, value

    def buffers(self) -> Iterator[Tuple[str, WeightBuffer]]:
        for name, stage in self.stages():
            yield from stage.buffers(name)

    def to_dict(self) -> Dict[str, StageParams]:
        return dict(self.stages())


__all__ = [
    "ABSENT",
    "Absent",
    "BatchNorm",
    "ConvParams",
    "ConvWithBatchNorm",
    "NetParams",
    "OptionalStage",
    "SeparableConvParams",
    "StageParams",
]
