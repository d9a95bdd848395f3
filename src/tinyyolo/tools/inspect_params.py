"""Load a Tiny YOLOv2 weight file and report the resulting parameter tree."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from ..config import load_config
from ..params.assemble import StageKind
from ..params.loader import LoadResult, load_quantized_params
from ..weights.store_common import ParamExtractionError, ParamMapping, WeightStoreError

logger = logging.getLogger(__name__)

PROG = "tinyyolo-params"


@dataclass(frozen=True)
class BufferInfo:
    path: str
    dtype: str
    shape: Tuple[int, ...]


@dataclass(frozen=True)
class StageInfo:
    name: str
    kind: StageKind
    buffers: Tuple[BufferInfo, ...]


@dataclass(frozen=True)
class LoadSummary:
    """Summary of one parameter load, for display and auditing."""

    source: Path | None
    family: str
    num_filters: int
    stages: Tuple[StageInfo, ...]
    param_mappings: Tuple[ParamMapping, ...]
    released: Tuple[str, ...]

    @classmethod
    def from_result(cls, result: LoadResult) -> "LoadSummary":
        stages: List[StageInfo] = []
        for name, kind in result.topology.stages:
            buffers: Tuple[BufferInfo, ...] = ()
            if kind is not StageKind.ABSENT:
                stage = getattr(result.params, name)
                buffers = tuple(
                    BufferInfo(path=path, dtype=buffer.dtype, shape=buffer.shape)
                    for path, buffer in stage.buffers(name)
                )
            stages.append(StageInfo(name=name, kind=kind, buffers=buffers))
        return cls(
            source=result.store.path,
            family=result.topology.family.value,
            num_filters=result.topology.num_filters,
            stages=tuple(stages),
            param_mappings=result.param_mappings,
            released=result.released,
        )

    @property
    def buffer_count(self) -> int:
        return sum(len(stage.buffers) for stage in self.stages)

    def to_dict(self, *, include_mappings: bool = False) -> Dict[str, object]:
        data: Dict[str, object] = {
            "source": str(self.source) if self.source is not None else None,
            "family": self.family,
            "num_filters": self.num_filters,
            "stages": [
                {
                    "name": stage.name,
                    "kind": stage.kind.value,
                    "buffers": [
                        {"path": info.path, "dtype": info.dtype, "shape": list(info.shape)}
                        for info in stage.buffers
                    ],
                }
                for stage in self.stages
            ],
            "buffer_count": self.buffer_count,
            "released": list(self.released),
        }
        if include_mappings:
            data["param_mappings"] = [mapping.to_dict() for mapping in self.param_mappings]
        return data


def format_summary(summary: LoadSummary, *, include_mappings: bool = False) -> str:
    """Return a human-friendly multi-line report of the loaded tree."""

    header = "Tiny YOLOv2 Parameter Summary"
    lines = [header, "=" * len(header)]
    lines.append(f"Source  : {summary.source if summary.source is not None else '<memory>'}")
    lines.append(f"Topology: {summary.family} ({summary.num_filters} filters)")
    lines.append("")
    lines.append("Stages:")
    for stage in summary.stages:
        lines.append(f"  {stage.name:<6} {stage.kind.value}")
        for info in stage.buffers:
            shape_text = " × ".join(str(dim) for dim in info.shape)
            lines.append(f"    {info.path:<28} {info.dtype:<5} {shape_text}")

    if include_mappings:
        lines.append("")
        lines.append("Param mappings:")
        for mapping in summary.param_mappings:
            lines.append(f"  {mapping.original_path} -> {mapping.param_path}")

    lines.append("")
    lines.append("Released buffers:")
    if summary.released:
        for name in summary.released:
            lines.append(f"  {name}")
    else:
        lines.append("  <none>")

    lines.append("")
    lines.append(
        f"Total buffers: {summary.buffer_count} | Released: {len(summary.released)}"
    )
    return "\n".join(lines)


def render_summary(
    summary: LoadSummary, *, format: str = "table", include_mappings: bool = False
) -> str:
    normalized = format.lower()
    if normalized == "table":
        return format_summary(summary, include_mappings=include_mappings)
    if normalized == "json":
        return json.dumps(
            summary.to_dict(include_mappings=include_mappings), indent=2, sort_keys=True
        )
    raise ValueError(f"Unsupported summary format: {format}")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Load a quantised Tiny YOLOv2 weight file and summarise its parameters.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--weights",
        required=True,
        help="Path or file:// URI of the safetensors weight file or its directory",
    )
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="JSON file holding the Tiny YOLOv2 architecture configuration",
    )
    parser.add_argument(
        "--default-model-name",
        default="",
        help="Weight file stem used when --weights names a directory",
    )
    parser.add_argument(
        "--summary-format",
        choices=("table", "json"),
        default="table",
        help="Format to use when rendering the summary",
    )
    parser.add_argument(
        "--summary-output",
        type=Path,
        help="Optional path to write the summary to",
    )
    parser.add_argument(
        "--mappings",
        action="store_true",
        help="Include the parameter mapping log in the summary",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help="Enable verbose logging (can also set TINYYOLO_VERBOSE=1)",
    )
    parser.add_argument(
        "--quiet",
        dest="verbose",
        action="store_false",
        help="Disable verbose logging",
    )
    args = parser.parse_args(argv)

    args.config = args.config.expanduser()
    if args.summary_output is not None:
        args.summary_output = args.summary_output.expanduser()

    if args.verbose is None:
        env_value = os.environ.get("TINYYOLO_VERBOSE")
        if env_value is None:
            args.verbose = False
        else:
            args.verbose = env_value.lower() not in {"", "0", "false", "no"}
    return args


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    try:
        config = load_config(args.config)
        result = load_quantized_params(args.weights, config, args.default_model_name)
    except (OSError, ValueError, WeightStoreError, ParamExtractionError) as exc:
        logger.debug("Parameter load failed", exc_info=True)
        print(f"{PROG}: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    try:
        summary = LoadSummary.from_result(result)
    finally:
        result.store.close()

    rendered = render_summary(
        summary, format=args.summary_format, include_mappings=args.mappings
    )
    if args.summary_output is not None:
        args.summary_output.parent.mkdir(parents=True, exist_ok=True)
        text = rendered if rendered.endswith("\n") else rendered + "\n"
        args.summary_output.write_text(text, encoding="utf-8")
    else:
        print(rendered)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
