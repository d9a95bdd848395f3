from __future__ import annotations

import sys
from pathlib import Path

import pytest

np = pytest.importorskip("numpy")
pytest.importorskip("safetensors.numpy")

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
for entry in (ROOT, SRC):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

from tests.store_fixtures import (
    batch_norm_net_arrays,
    config_dict,
    separable_conv_arrays,
    separable_net_arrays,
    write_store,
)
from tinyyolo.config import TinyYolov2Config
from tinyyolo.params.loader import load_quantized_params, load_quantized_params_from_store
from tinyyolo.params.types import ABSENT, ConvParams, ConvWithBatchNorm, SeparableConvParams
from tinyyolo.weights.store import WeightStore
from tinyyolo.weights.store_common import MissingEntryError, RankMismatchError, ReleasedBufferError


def _config(**kwargs) -> TinyYolov2Config:
    return TinyYolov2Config.from_dict(config_dict(**kwargs))


def test_batch_norm_store_loads_without_reclaiming(tmp_path: Path) -> None:
    arrays = batch_norm_net_arrays()
    path = write_store(tmp_path / "tiny_yolov2.safetensors", arrays)

    result = load_quantized_params(path, _config(separable=False))
    try:
        params, mappings = result
        for idx in range(8):
            assert isinstance(getattr(params, f"conv{idx}"), ConvWithBatchNorm)
        assert isinstance(params.conv8, ConvParams)
        assert result.released == ()
        assert len(mappings) == len(arrays) == len(list(params.buffers()))
        assert len({mapping.original_path for mapping in mappings}) == len(mappings)
        np.testing.assert_array_equal(params.conv3.bn.sub.array, arrays["conv3/bn/sub"])
    finally:
        result.store.close()


def test_rank_mismatch_aborts_load_without_releasing(tmp_path: Path) -> None:
    arrays = batch_norm_net_arrays()
    arrays["conv3/conv/filters"] = arrays["conv3/conv/filters"][0]
    store = WeightStore.from_arrays(arrays)

    with pytest.raises(RankMismatchError) as excinfo:
        load_quantized_params_from_store(store, _config(separable=False))

    assert str(excinfo.value) == str(RankMismatchError("conv3/conv/filters", 4, 3))
    assert (excinfo.value.expected_rank, excinfo.value.actual_rank) == (4, 3)
    assert store.released_names == ()


def test_missing_first_layer_filters(tmp_path: Path) -> None:
    arrays = separable_net_arrays(9, first_layer_conv2d=True)
    del arrays["conv0/filters"]
    path = write_store(tmp_path / "model.safetensors", arrays)
    config = _config(separable=True, filter_sizes=[16] * 9, first_layer_conv2d=True)

    with pytest.raises(MissingEntryError) as excinfo:
        load_quantized_params(str(tmp_path), config)

    assert excinfo.value.name == "conv0/filters"


def test_unused_optional_stages_are_reclaimed() -> None:
    rng = np.random.default_rng(7)
    arrays = separable_net_arrays(7)
    arrays.update(separable_conv_arrays("conv6", rng))
    arrays.update(separable_conv_arrays("conv7", rng))
    store = WeightStore.from_arrays(arrays)

    params, mappings = load_quantized_params_from_store(
        store, _config(separable=True, filter_sizes=[16] * 7)
    )

    assert params.conv6 is ABSENT
    assert params.conv7 is ABSENT
    assert isinstance(params.conv5, SeparableConvParams)
    stale = {name for name in arrays if name.startswith(("conv6/", "conv7/"))}
    assert set(store.released_names) == stale
    assert {mapping.original_path for mapping in mappings} == set(arrays) - stale


def test_every_store_buffer_is_referenced_or_released() -> None:
    arrays = separable_net_arrays(9)
    arrays["unused/extra"] = np.zeros(3, dtype=np.float32)
    store = WeightStore.from_arrays(arrays)

    result = load_quantized_params_from_store(store, _config(separable=True))

    referenced = {mapping.original_path for mapping in result.param_mappings}
    assert result.released == ("unused/extra",)
    for name in store:
        assert (name in referenced) != store[name].released


def test_mapping_log_follows_stage_order() -> None:
    store = WeightStore.from_arrays(separable_net_arrays(8))

    result = load_quantized_params_from_store(store, _config(separable=True, filter_sizes=[8] * 8))

    stage_order = []
    for mapping in result.param_mappings:
        stage = mapping.original_path.split("/", 1)[0]
        if not stage_order or stage_order[-1] != stage:
            stage_order.append(stage)
    assert stage_order == ["conv0", "conv1", "conv2", "conv3", "conv4", "conv5", "conv6", "conv8"]


def test_store_load_errors_propagate(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_quantized_params(tmp_path, _config(separable=False), "absent")


def test_reloading_a_reclaimed_store_fails_on_released_stage() -> None:
    store = WeightStore.from_arrays(separable_net_arrays(9))
    load_quantized_params_from_store(store, _config(separable=True, filter_sizes=[16] * 7))
    released = store.released_names

    with pytest.raises(ReleasedBufferError) as excinfo:
        load_quantized_params_from_store(store, _config(separable=True))

    assert excinfo.value.name == "conv6/depthwise_filter"
    assert store.released_names == released


def test_closing_the_store_invalidates_unread_params(tmp_path: Path) -> None:
    path = write_store(tmp_path / "model.safetensors", separable_net_arrays(9))

    result = load_quantized_params(path, _config(separable=True))
    bias = result.params.conv8.bias.array
    result.store.close()

    np.testing.assert_array_equal(result.params.conv8.bias.array, bias)
    with pytest.raises(ReleasedBufferError):
        result.params.conv0.bias.array
