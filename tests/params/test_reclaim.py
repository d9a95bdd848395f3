from __future__ import annotations

import sys
from pathlib import Path

import pytest

np = pytest.importorskip("numpy")

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from tinyyolo.params.reclaim import dispose_unused_weight_tensors
from tinyyolo.weights.store import WeightStore
from tinyyolo.weights.store_common import ParamMapping


def _store() -> WeightStore:
    return WeightStore.from_arrays(
        {
            "conv0/filters": np.zeros((1, 1, 1, 1), dtype=np.float32),
            "conv0/bias": np.zeros(1, dtype=np.float32),
            "extra/bias": np.zeros(1, dtype=np.float32),
        }
    )


def test_full_log_releases_nothing() -> None:
    store = _store()
    mappings = [ParamMapping(name, name) for name in store]

    assert dispose_unused_weight_tensors(store, mappings) == []
    assert store.released_names == ()


def test_empty_log_releases_everything() -> None:
    store = _store()

    released = dispose_unused_weight_tensors(store, [])

    assert released == ["conv0/filters", "conv0/bias", "extra/bias"]
    assert store.live_names == ()


def test_only_unreferenced_buffers_are_released() -> None:
    store = _store()
    mappings = [ParamMapping("conv0/filters", "conv0/filters"), ParamMapping("conv0/bias", "b")]

    assert dispose_unused_weight_tensors(store, mappings) == ["extra/bias"]
    assert store["conv0/bias"].array.shape == (1,)


def test_repeated_reclamation_is_a_no_op() -> None:
    store = _store()
    dispose_unused_weight_tensors(store, [])

    assert dispose_unused_weight_tensors(store, []) == []
    assert set(store.released_names) == set(store)
