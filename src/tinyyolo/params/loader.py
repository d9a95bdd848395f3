"""Load the quantised Tiny YOLOv2 parameter tree from a weight store."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from ..config import TinyYolov2Config
from ..weights.store import WeightStore, load_weight_map
from ..weights.store_common import ParamMapping
from .assemble import Topology, assemble_net_params, resolve_topology
from .builders import SeparableConvFactory, extractors_factory
from .extract import extract_weight_entry_factory
from .reclaim import dispose_unused_weight_tensors
from .types import NetParams

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadResult:
    params: NetParams
    param_mappings: Tuple[ParamMapping, ...]
    released: Tuple[str, ...]
    topology: Topology
    store: WeightStore

    def __iter__(self) -> Iterator[object]:
        yield self.params
        yield self.param_mappings


def load_quantized_params_from_store(
    weight_map: WeightStore,
    config: TinyYolov2Config,
    *,
    separable_conv_factory: Optional[SeparableConvFactory] = None,
) -> LoadResult:
    """Assemble ``config``'s parameter tree and release what it leaves unused.

    Extraction failures propagate as soon as they occur and no buffer is
    released in that case.
    """

    topology = resolve_topology(config)
    logger.info(
        "Resolved %s topology with stages %s",
        topology.family.value,
        ", ".join(topology.present_stages),
    )

    param_mappings: List[ParamMapping] = []
    extract_weight_entry = extract_weight_entry_factory(weight_map, param_mappings)
    extractors = extractors_factory(extract_weight_entry, separable_conv_factory)
    params = assemble_net_params(config, extractors, topology)

    released = dispose_unused_weight_tensors(weight_map, param_mappings)
    logger.info(
        "Loaded %d parameter buffers (%d released)", len(param_mappings), len(released)
    )
    return LoadResult(
        params=params,
        param_mappings=tuple(param_mappings),
        released=tuple(released),
        topology=topology,
        store=weight_map,
    )


def load_quantized_params(
    uri: str | Path,
    config: TinyYolov2Config,
    default_model_name: str = "",
    *,
    separable_conv_factory: Optional[SeparableConvFactory] = None,
) -> LoadResult:
    """Open the weight file at ``uri`` and load its parameter tree.

    Store loading errors (missing file, unreadable header) propagate
    unchanged. The returned store stays open because the tree holds lazy
    handles into it; close ``result.store`` once the tree is disposed.
    """

    weight_map = load_weight_map(uri, default_model_name)
    try:
        return load_quantized_params_from_store(
            weight_map, config, separable_conv_factory=separable_conv_factory
        )
    except BaseException:
        weight_map.close()
        raise


__all__ = ["LoadResult", "load_quantized_params", "load_quantized_params_from_store"]
