"""
Error taxonomy for the live pipeline.

Setup errors are fatal to startup and surface once to the caller of
``DetectionPipeline.start``. ``InferenceFailed`` is per-frame and never
escapes the worker context.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .variants import ModelVariant


class PeriscopeError(Exception):
    """Root of every error raised by periscope.live."""


class SetupError(PeriscopeError):
    """Pipeline could not be configured; no partial state is kept."""


class DeviceNotFound(SetupError):
    def __init__(self, position: str) -> None:
        super().__init__(f"No camera device found for position={position}")
        self.position = position


class FormatNotFound(SetupError):
    def __init__(self, device: str, encoding: str) -> None:
        super().__init__(f"Camera {device!r} offers no {encoding} capture format")
        self.device = device
        self.encoding = encoding


class BackendLoadFailed(SetupError):
    pass


class UnsupportedConfiguration(SetupError, ValueError):
    """A (task, weight) pair with no backing implementation, or an unmet capability gate."""

    def __init__(self, variant: "ModelVariant", reason: Optional[str] = None) -> None:
        msg = f"Unsupported model configuration: {variant}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)
        self.variant = variant
        self.reason = reason


class InferenceFailed(PeriscopeError, RuntimeError):
    def __init__(self, variant: object, frame_index: Optional[int] = None) -> None:
        where = f" on frame {frame_index}" if frame_index is not None else ""
        super().__init__(f"Inference failed for {variant}{where}")
        self.variant = variant
        self.frame_index = frame_index
