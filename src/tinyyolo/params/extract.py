"""Rank-checked extraction of named buffers from a weight store."""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Set

from ..weights.store import WeightBuffer
from ..weights.store_common import (
    DuplicateEntryError,
    MissingEntryError,
    ParamMapping,
    RankMismatchError,
    ReleasedBufferError,
)

logger = logging.getLogger(__name__)


class WeightEntryExtractor:
    """Look up buffers by name and log where each one lands in the tree.

    Every successful call appends exactly one :class:`ParamMapping` to
    ``param_mappings``; failed calls leave it untouched.
    """

    def __init__(
        self,
        weight_map: Mapping[str, WeightBuffer],
        param_mappings: Optional[List[ParamMapping]] = None,
    ) -> None:
        self._weight_map = weight_map
        self.param_mappings: List[ParamMapping] = (
            param_mappings if param_mappings is not None else []
        )
        self._extracted: Set[str] = {mapping.original_path for mapping in self.param_mappings}

    def __call__(
        self,
        original_path: str,
        param_rank: int,
        mapped_path: Optional[str] = None,
    ) -> WeightBuffer:
        buffer = self._weight_map.get(original_path)
        if buffer is None:
            raise MissingEntryError(original_path)
        if buffer.released:
            raise ReleasedBufferError(original_path)
        if buffer.rank != param_rank:
            raise RankMismatchError(original_path, param_rank, buffer.rank)
        if original_path in self._extracted:
            raise DuplicateEntryError(original_path)

        mapping = ParamMapping(original_path, mapped_path or original_path)
        self.param_mappings.append(mapping)
        self._extracted.add(original_path)
        logger.debug("Extracted %s -> %s %s", mapping.original_path, mapping.param_path, buffer.shape)
        return buffer


def extract_weight_entry_factory(
    weight_map: Mapping[str, WeightBuffer],
    param_mappings: List[ParamMapping],
) -> WeightEntryExtractor:
    return WeightEntryExtractor(weight_map, param_mappings)


__all__ = ["WeightEntryExtractor", "extract_weight_entry_factory"]
