"""
Weight files for the supported live variants and the lazy Ultralytics loader.

Edit ``WEIGHTS`` if you add or rename checkpoints. A weight that is missing
from the model directory is passed to Ultralytics by bare file name, which
fetches the upstream release asset on first use.
"""

from __future__ import annotations

import importlib
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Final, Optional, Union

from .live.errors import BackendLoadFailed
from .live.variants import SupportedVariant
from .logging_config import bind_context

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

_ERROR_TOKENS = ("error", "fail", "missing")


def _log(event: str, **info: object) -> None:
    detail = " ".join(f"{key}={info[key]}" for key in sorted(info) if info[key] is not None)
    if any(token in event for token in _ERROR_TOKENS):
        LOGGER.error("%s %s", event, detail)
    else:
        LOGGER.info("%s %s", event, detail)


_ROOT: Final[Path] = Path(__file__).resolve().parent
MODEL_DIR: Final[Path] = Path(os.getenv("PERISCOPE_MODEL_DIR") or (_ROOT / "model")).expanduser()

WEIGHTS: Final[Dict[SupportedVariant, str]] = {
    SupportedVariant.DETECT_NANO: "yolov8n.pt",
    SupportedVariant.DETECT_SMALL: "yolov8s.pt",
    SupportedVariant.SEGMENT_NANO: "yolov8n-seg.pt",
    SupportedVariant.SEGMENT_SMALL: "yolov8s-seg.pt",
}


def weight_path(variant: SupportedVariant, weights_dir: Optional[Path] = None) -> Union[Path, str]:
    """Local checkpoint for ``variant`` if present, otherwise the bare upstream name."""
    filename = WEIGHTS[variant]
    candidate = (weights_dir or MODEL_DIR) / filename
    if candidate.exists():
        return candidate
    return filename


def _resolve_yolo_class() -> Any:
    """
    Import ``ultralytics.YOLO`` lazily.

    Honors tests that install a fake ``ultralytics`` module before the loader
    runs, and keeps the heavy import off the package import path.
    """
    try:
        module = importlib.import_module("ultralytics")
    except ImportError as exc:
        _log("weights.load.missing", reason="ultralytics-missing")
        raise BackendLoadFailed("ultralytics is not installed") from exc
    yolo_cls = getattr(module, "YOLO", None)
    if yolo_cls is None:
        raise BackendLoadFailed("ultralytics does not expose YOLO")
    return yolo_cls


def load_model(variant: SupportedVariant, weights_dir: Optional[Path] = None) -> Any:
    """Instantiate ``YOLO(weight, task=...)`` for ``variant``."""
    yolo_cls = _resolve_yolo_class()
    weight = str(weight_path(variant, weights_dir))
    with bind_context(model_task=variant.ultralytics_task, weight_path=weight):
        start = time.perf_counter()
        try:
            model = yolo_cls(weight, task=variant.ultralytics_task)
        except Exception as exc:
            _log("weights.load.failed", weight=weight, error=type(exc).__name__)
            raise BackendLoadFailed(f"Failed to load {weight}: {exc}") from exc
        _log("weights.load.ok", weight=weight, ms=round((time.perf_counter() - start) * 1000.0, 1))
    return model
