"""Release weight buffers that no parameter tree references."""

from __future__ import annotations

import logging
from typing import Iterable, List

from ..weights.store import WeightStore
from ..weights.store_common import ParamMapping

logger = logging.getLogger(__name__)


def dispose_unused_weight_tensors(
    weight_map: WeightStore,
    param_mappings: Iterable[ParamMapping],
) -> List[str]:
    """Release every buffer of ``weight_map`` absent from ``param_mappings``.

    Returns the names released by this call, in store order. Buffers that
    were already released are skipped.
    """

    used = {mapping.original_path for mapping in param_mappings}
    released: List[str] = []
    for name in weight_map:
        if name in used:
            continue
        if weight_map.release(name):
            released.append(name)
    if released:
        logger.info("Released %d unused weight buffers", len(released))
    return released


__all__ = ["dispose_unused_weight_tensors"]
