"""Tiny YOLOv2 architecture configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

DEFAULT_NUM_FILTERS = 9


class ConfigError(ValueError):
    """Raised when a Tiny YOLOv2 configuration is malformed."""


@dataclass(frozen=True)
class Anchor:
    x: float
    y: float


@dataclass
class TinyYolov2Config:
    with_separable_convs: bool
    iou_threshold: float = 0.4
    anchors: List[Anchor] = field(default_factory=list)
    classes: List[str] = field(default_factory=list)
    mean_rgb: Optional[Tuple[float, float, float]] = None
    with_class_scores: bool = False
    filter_sizes: Optional[List[int]] = None
    is_first_layer_conv2d: bool = False

    @property
    def num_filters(self) -> int:
        """Number of convolution stages; an empty or missing list means nine."""

        return len(self.filter_sizes or ()) or DEFAULT_NUM_FILTERS

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "TinyYolov2Config":
        """Build a config from camelCase (model JSON) or snake_case keys."""

        raw = dict(data)

        def _select(*keys: str) -> object | None:
            for key in keys:
                if key in raw:
                    return raw[key]
            return None

        def _coerce_bool(name: str, value: object | None, default: bool) -> bool:
            if value is None:
                return default
            if not isinstance(value, bool):
                raise ConfigError(f"Config field '{name}' must be a boolean, got {value!r}")
            return value

        def _coerce_float(name: str, value: object | None, default: float) -> float:
            if value is None:
                return default
            if isinstance(value, bool):
                raise ConfigError(f"Config field '{name}' must be a number, got {value!r}")
            try:
                return float(value)  # type: ignore[arg-type]
            except (TypeError, ValueError) as exc:
                raise ConfigError(
                    f"Config field '{name}' must be a number, got {value!r}"
                ) from exc

        with_separable_convs = _select("with_separable_convs", "withSeparableConvs")
        if with_separable_convs is None:
            raise ConfigError("Config must define 'withSeparableConvs'")

        anchors_raw = _select("anchors") or []
        if not isinstance(anchors_raw, Sequence) or isinstance(anchors_raw, str):
            raise ConfigError(f"Config field 'anchors' must be a list, got {anchors_raw!r}")
        anchors: List[Anchor] = []
        for idx, anchor in enumerate(anchors_raw):
            if isinstance(anchor, Anchor):
                anchors.append(anchor)
                continue
            if not isinstance(anchor, Mapping):
                raise ConfigError(f"Anchor {idx} must be an object with 'x' and 'y'")
            anchors.append(
                Anchor(
                    x=_coerce_float(f"anchors[{idx}].x", anchor.get("x"), float("nan")),
                    y=_coerce_float(f"anchors[{idx}].y", anchor.get("y"), float("nan")),
                )
            )

        classes_raw = _select("classes") or []
        if not isinstance(classes_raw, Sequence) or isinstance(classes_raw, str):
            raise ConfigError(f"Config field 'classes' must be a list, got {classes_raw!r}")

        mean_rgb_raw = _select("mean_rgb", "meanRgb")
        mean_rgb: Optional[Tuple[float, float, float]] = None
        if mean_rgb_raw is not None:
            if not isinstance(mean_rgb_raw, Sequence) or len(mean_rgb_raw) != 3:
                raise ConfigError(
                    f"Config field 'meanRgb' must hold three numbers, got {mean_rgb_raw!r}"
                )
            r, g, b = (
                _coerce_float(f"meanRgb[{idx}]", value, 0.0)
                for idx, value in enumerate(mean_rgb_raw)
            )
            mean_rgb = (r, g, b)

        filter_sizes_raw = _select("filter_sizes", "filterSizes")
        filter_sizes: Optional[List[int]] = None
        if filter_sizes_raw is not None:
            if not isinstance(filter_sizes_raw, Sequence) or isinstance(filter_sizes_raw, str):
                raise ConfigError(
                    f"Config field 'filterSizes' must be a list, got {filter_sizes_raw!r}"
                )
            try:
                filter_sizes = [int(size) for size in filter_sizes_raw]
            except (TypeError, ValueError) as exc:
                raise ConfigError(
                    f"Config field 'filterSizes' must hold integers, got {filter_sizes_raw!r}"
                ) from exc

        config = TinyYolov2Config(
            with_separable_convs=_coerce_bool(
                "withSeparableConvs", with_separable_convs, False
            ),
            iou_threshold=_coerce_float(
                "iouThreshold", _select("iou_threshold", "iouThreshold"), 0.4
            ),
            anchors=anchors,
            classes=[str(name) for name in classes_raw],
            mean_rgb=mean_rgb,
            with_class_scores=_coerce_bool(
                "withClassScores", _select("with_class_scores", "withClassScores"), False
            ),
            filter_sizes=filter_sizes,
            is_first_layer_conv2d=_coerce_bool(
                "isFirstLayerConv2d", _select("is_first_layer_conv2d", "isFirstLayerConv2d"), False
            ),
        )
        validate_config(config)
        return config

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "withSeparableConvs": self.with_separable_convs,
            "iouThreshold": self.iou_threshold,
            "anchors": [{"x": anchor.x, "y": anchor.y} for anchor in self.anchors],
            "classes": list(self.classes),
            "withClassScores": self.with_class_scores,
            "isFirstLayerConv2d": self.is_first_layer_conv2d,
        }
        if self.mean_rgb is not None:
            data["meanRgb"] = list(self.mean_rgb)
        if self.filter_sizes is not None:
            data["filterSizes"] = list(self.filter_sizes)
        return data


def validate_config(config: TinyYolov2Config) -> None:
    if not isinstance(config.with_separable_convs, bool):
        raise ConfigError(
            f"expected withSeparableConvs to be a boolean, have: {config.with_separable_convs!r}"
        )
    if not 0.0 <= config.iou_threshold <= 1.0:
        raise ConfigError(
            f"expected iouThreshold to lie in [0, 1], have: {config.iou_threshold!r}"
        )
    for idx, anchor in enumerate(config.anchors):
        if anchor.x != anchor.x or anchor.y != anchor.y:
            raise ConfigError(f"expected anchors[{idx}] to define numeric x and y")
    if not all(isinstance(name, str) for name in config.classes):
        raise ConfigError(f"expected classes to be a list of strings, have: {config.classes!r}")
    if config.filter_sizes is not None and any(size <= 0 for size in config.filter_sizes):
        raise ConfigError(
            f"expected filterSizes to be positive, have: {config.filter_sizes!r}"
        )


def load_config(path: Path) -> TinyYolov2Config:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return TinyYolov2Config.from_dict(data)


__all__ = [
    "Anchor",
    "ConfigError",
    "DEFAULT_NUM_FILTERS",
    "TinyYolov2Config",
    "load_config",
    "validate_config",
]
