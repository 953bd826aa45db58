"""
Hardware/capability probe and live settings.

Settings come from ``PERISCOPE_LIVE_*`` environment variables; CLI options
override them. Thresholds are not settings: they belong to the backends.
"""

from __future__ import annotations

import os
import platform
import re
from dataclasses import dataclass, replace
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Union

from .formats import DEFAULT_ENCODING, PixelEncoding
from .geometry import DeviceOrientation
from .variants import ModelVariant, Task, Weight

# First Ultralytics release shipping YOLOv8-seg.
MIN_SEGMENTATION_ULTRALYTICS: Tuple[int, int] = (8, 0)


@dataclass(frozen=True)
class PlatformCapabilities:
    segmentation: bool
    arch: str = "unknown"
    ultralytics: Optional[str] = None


def _version_tuple(text: str) -> Tuple[int, ...]:
    parts = re.findall(r"\d+", text)[:3]
    return tuple(int(p) for p in parts)


def probe_capabilities() -> PlatformCapabilities:
    """
    Decide whether segmentation models can run. Reads package metadata only,
    so it is safe on the thread that calls ``start()``.
    """
    try:
        uly_version: Optional[str] = _pkg_version("ultralytics")
    except PackageNotFoundError:
        uly_version = None
    segmentation = uly_version is not None and _version_tuple(uly_version) >= MIN_SEGMENTATION_ULTRALYTICS
    return PlatformCapabilities(segmentation=segmentation, arch=platform.machine() or "unknown", ultralytics=uly_version)


def probe_device() -> str:
    """Torch device for inference; imports torch, so call it where a model is being loaded."""
    import torch

    if torch.cuda.is_available():
        return "cuda:0"
    return "cpu"


def _env(environ: Mapping[str, str], key: str) -> Optional[str]:
    value = environ.get(f"PERISCOPE_LIVE_{key}")
    if value is None or not value.strip():
        return None
    return value.strip()


def parse_size(text: str) -> Tuple[int, int]:
    """Parse ``WxH`` (also ``W,H``) into a pair of non-negative ints."""
    match = re.fullmatch(r"\s*(\d+)\s*[xX,]\s*(\d+)\s*", text)
    if match is None:
        raise ValueError(f"Expected WxH, got {text!r}")
    return int(match.group(1)), int(match.group(2))


@dataclass(frozen=True)
class LiveSettings:
    task: Task = Task.DETECTION
    weight: Weight = Weight.NANO
    throttle_interval: int = 1
    required_encoding: PixelEncoding = DEFAULT_ENCODING
    camera: Union[int, str] = 0
    preview_size: Tuple[int, int] = (390, 844)
    orientation: DeviceOrientation = DeviceOrientation.PORTRAIT
    weights_dir: Optional[Path] = None
    device: Optional[str] = None

    def __post_init__(self) -> None:
        if self.throttle_interval < 1:
            raise ValueError("throttle_interval must be >= 1")

    @property
    def variant(self) -> ModelVariant:
        return ModelVariant(self.task, self.weight)

    @property
    def synthetic(self) -> bool:
        return str(self.camera).lower() == "synthetic"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LiveSettings":
        env = os.environ if environ is None else environ
        settings = cls()
        updates: dict[str, Any] = {}
        if (raw := _env(env, "TASK")) is not None:
            updates["task"] = Task.parse(raw)
        if (raw := _env(env, "WEIGHT")) is not None:
            updates["weight"] = Weight.parse(raw)
        if (raw := _env(env, "EVERY")) is not None:
            updates["throttle_interval"] = int(raw)
        if (raw := _env(env, "ENCODING")) is not None:
            updates["required_encoding"] = PixelEncoding.parse(raw)
        if (raw := _env(env, "CAMERA")) is not None:
            updates["camera"] = int(raw) if raw.isdigit() else raw
        if (raw := _env(env, "PREVIEW")) is not None:
            updates["preview_size"] = parse_size(raw)
        if (raw := _env(env, "ORIENTATION")) is not None:
            updates["orientation"] = DeviceOrientation.parse(raw)
        if (raw := _env(env, "WEIGHTS_DIR")) is not None:
            updates["weights_dir"] = Path(raw).expanduser()
        if (raw := _env(env, "DEVICE")) is not None:
            updates["device"] = raw
        return replace(settings, **updates) if updates else settings

    def override(self, **changes: Any) -> "LiveSettings":
        """Apply the non-``None`` values in ``changes``."""
        kept = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **kept) if kept else self
