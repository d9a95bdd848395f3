"""Quantised Tiny YOLOv2 parameter loading."""

from __future__ import annotations

import importlib
from types import ModuleType
from typing import TYPE_CHECKING

__all__ = ["config", "params", "tools", "weights"]


def __getattr__(name: str) -> ModuleType:
    """Lazily import subpackages so numpy and safetensors load on demand."""

    if name in __all__:
        module = importlib.import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


if TYPE_CHECKING:  # pragma: no cover - imported for static analyzers
    from . import config, params, tools, weights  # noqa: F401
