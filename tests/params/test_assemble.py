from __future__ import annotations

import sys
from pathlib import Path

import pytest

np = pytest.importorskip("numpy")

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
for entry in (ROOT, SRC):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

from tests.store_fixtures import batch_norm_net_arrays, separable_net_arrays
from tinyyolo.config import TinyYolov2Config
from tinyyolo.params.assemble import (
    STAGE_NAMES,
    StageKind,
    TopologyFamily,
    assemble_net_params,
    resolve_topology,
)
from tinyyolo.params.builders import extractors_factory
from tinyyolo.params.extract import WeightEntryExtractor
from tinyyolo.params.types import (
    ABSENT,
    ConvParams,
    ConvWithBatchNorm,
    SeparableConvParams,
)
from tinyyolo.weights.store import WeightStore


def _config(**kwargs) -> TinyYolov2Config:
    return TinyYolov2Config(**kwargs)


def test_batch_norm_topology_is_fixed() -> None:
    topology = resolve_topology(_config(with_separable_convs=False, filter_sizes=[1, 2, 3]))

    assert topology.family is TopologyFamily.BATCH_NORM
    assert topology.present_stages == STAGE_NAMES
    assert [kind for _, kind in topology.stages] == [StageKind.CONV_WITH_BATCH_NORM] * 8 + [
        StageKind.CONV
    ]


@pytest.mark.parametrize(
    "filter_sizes, has_conv6, has_conv7",
    [
        ([16] * 7, False, False),
        ([16] * 8, True, False),
        ([16] * 9, True, True),
        ([16] * 10, True, True),
        (None, True, True),
        ([], True, True),
    ],
)
def test_separable_topology_gates_optional_stages(filter_sizes, has_conv6, has_conv7) -> None:
    topology = resolve_topology(_config(with_separable_convs=True, filter_sizes=filter_sizes))

    assert (topology.kind("conv6") is StageKind.SEPARABLE) is has_conv6
    assert (topology.kind("conv7") is StageKind.SEPARABLE) is has_conv7
    assert topology.kind("conv8") is StageKind.CONV


@pytest.mark.parametrize(
    "first_layer_conv2d, expected", [(True, StageKind.CONV), (False, StageKind.SEPARABLE)]
)
def test_first_layer_mode_only_affects_conv0(first_layer_conv2d, expected) -> None:
    topology = resolve_topology(
        _config(with_separable_convs=True, is_first_layer_conv2d=first_layer_conv2d)
    )

    assert topology.kind("conv0") is expected
    assert all(topology.kind(f"conv{idx}") is StageKind.SEPARABLE for idx in range(1, 8))


def test_first_layer_flag_is_ignored_without_separable_convs() -> None:
    topology = resolve_topology(_config(with_separable_convs=False, is_first_layer_conv2d=True))

    assert topology.kind("conv0") is StageKind.CONV_WITH_BATCH_NORM


def _assemble(arrays: dict, config: TinyYolov2Config):
    store = WeightStore.from_arrays(arrays)
    extract = WeightEntryExtractor(store)
    return assemble_net_params(config, extractors_factory(extract)), extract


def test_assemble_batch_norm_tree() -> None:
    params, extract = _assemble(batch_norm_net_arrays(), _config(with_separable_convs=False))

    for name in STAGE_NAMES[:-1]:
        assert isinstance(getattr(params, name), ConvWithBatchNorm)
    assert isinstance(params.conv8, ConvParams)
    assert extract.param_mappings[0].original_path == "conv0/conv/filters"
    assert extract.param_mappings[-1].original_path == "conv8/bias"


def test_assemble_omits_absent_stages() -> None:
    config = _config(with_separable_convs=True, filter_sizes=[16] * 8)
    params, _ = _assemble(separable_net_arrays(8), config)

    assert isinstance(params.conv6, SeparableConvParams)
    assert params.conv7 is ABSENT
    assert not params.has_stage("conv7")
    assert "conv7" not in params.to_dict()
    assert [name for name, _ in params.stages()] == [
        name for name in STAGE_NAMES if name != "conv7"
    ]


def test_tree_shape_does_not_depend_on_buffer_contents() -> None:
    config = _config(with_separable_convs=True, filter_sizes=[16] * 9, is_first_layer_conv2d=True)
    first, _ = _assemble(separable_net_arrays(first_layer_conv2d=True, seed=1), config)
    second, _ = _assemble(separable_net_arrays(first_layer_conv2d=True, seed=2), config)

    def shape_of(params):
        return [(name, type(stage)) for name, stage in params.stages()]

    assert shape_of(first) == shape_of(second)


def test_buffers_match_extraction_log() -> None:
    params, extract = _assemble(batch_norm_net_arrays(), _config(with_separable_convs=False))

    paths = [path for path, _ in params.buffers()]
    assert paths == [mapping.param_path for mapping in extract.param_mappings]
    assert len(paths) == len(set(paths)) == 8 * 4 + 2


def test_topology_kind_rejects_unknown_stage() -> None:
    topology = resolve_topology(_config(with_separable_convs=True, filter_sizes=[16] * 7))

    assert topology.kind("conv6") is StageKind.ABSENT
    assert topology.kind("conv8") is StageKind.CONV
    with pytest.raises(KeyError, match="conv9"):
        topology.kind("conv9")
