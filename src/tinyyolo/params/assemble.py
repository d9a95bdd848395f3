"""Resolve the network topology and assemble the parameter tree."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Dict, Tuple

from ..config import TinyYolov2Config
from .builders import Extractors
from .types import ABSENT, NetParams, OptionalStage

logger = logging.getLogger(__name__)

STAGE_NAMES: Tuple[str, ...] = tuple(f"conv{idx}" for idx in range(9))


class TopologyFamily(str, Enum):
    BATCH_NORM = "batch_norm"
    SEPARABLE = "separable"


class StageKind(str, Enum):
    CONV = "conv"
    CONV_WITH_BATCH_NORM = "conv_with_batch_norm"
    SEPARABLE = "separable"
    ABSENT = "absent"


@dataclass(frozen=True)
class Topology:
    """Stage layout fixed by the configuration before any extraction."""

    family: TopologyFamily
    num_filters: int
    stages: Tuple[Tuple[str, StageKind], ...]

    def kind(self, stage: str) -> StageKind:
        for name, kind in self.stages:
            if name == stage:
                return kind
        raise KeyError(f"Unknown stage {stage!r}")

    @property
    def present_stages(self) -> Tuple[str, ...]:
        return tuple(name for name, kind in self.stages if kind is not StageKind.ABSENT)


def resolve_topology(config: TinyYolov2Config) -> Topology:
    if not config.with_separable_convs:
        kinds = [StageKind.CONV_WITH_BATCH_NORM] * 8 + [StageKind.CONV]
        return Topology(
            family=TopologyFamily.BATCH_NORM,
            num_filters=len(STAGE_NAMES),
            stages=tuple(zip(STAGE_NAMES, kinds)),
        )

    num_filters = config.num_filters
    kinds = [StageKind.CONV if config.is_first_layer_conv2d else StageKind.SEPARABLE]
    kinds += [StageKind.SEPARABLE] * 5
    kinds.append(StageKind.SEPARABLE if num_filters > 7 else StageKind.ABSENT)
    kinds.append(StageKind.SEPARABLE if num_filters > 8 else StageKind.ABSENT)
    # the detection head is always a plain convolution
    kinds.append(StageKind.CONV)
    return Topology(
        family=TopologyFamily.SEPARABLE,
        num_filters=num_filters,
        stages=tuple(zip(STAGE_NAMES, kinds)),
    )


def assemble_net_params(
    config: TinyYolov2Config,
    extractors: Extractors,
    topology: Topology | None = None,
) -> NetParams:
    """Extract every stage of ``topology`` in order ``conv0`` .. ``conv8``."""

    if topology is None:
        topology = resolve_topology(config)

    builders = {
        StageKind.CONV: extractors.extract_conv_params,
        StageKind.CONV_WITH_BATCH_NORM: extractors.extract_conv_with_batch_norm_params,
        StageKind.SEPARABLE: extractors.extract_separable_conv_params,
    }
    stages: Dict[str, OptionalStage] = {}
    for name, kind in topology.stages:
        if kind is StageKind.ABSENT:
            stages[name] = ABSENT
            continue
        stages[name] = builders[kind](name)
    logger.debug("Assembled stages: %s", ", ".join(topology.present_stages))
    return NetParams(**stages)  # type: ignore[arg-type]


__all__ = [
    "STAGE_NAMES",
    "StageKind",
    "Topology",
    "TopologyFamily",
    "assemble_net_params",
    "resolve_topology",
]
