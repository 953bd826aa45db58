"""
Periscope live camera package.

Building blocks to:
  - negotiate a capture format and read frames from a camera (or synthetic device),
  - throttle frames and route them to a YOLO detect/segment backend,
  - map normalized boxes into rotated, mirrored preview space,
  - hand overlay frames to a rendering sink.

The CLI entrypoint lives in periscope.live.cli.
"""

from __future__ import annotations

from .camera import (
    DevicePosition,
    FrameSource,
    OpenCVDeviceProvider,
    PixelBuffer,
    SyntheticCaptureDevice,
    SyntheticDeviceProvider,
)
from .dispatcher import Detection, InferenceResult, ModelDispatcher, decode_detections
from .errors import (
    BackendLoadFailed,
    DeviceNotFound,
    FormatNotFound,
    InferenceFailed,
    PeriscopeError,
    SetupError,
    UnsupportedConfiguration,
)
from .formats import CaptureFormat, PixelEncoding, select_capture_format
from .geometry import (
    AffineTransform,
    DeviceOrientation,
    DisplayTransformContext,
    boxes_to_layer_space,
    layer_affine,
)
from .pipeline import DetectionPipeline, OverlayFrame, PipelineState
from .throttle import FrameThrottle
from .variants import ModelVariant, SupportedVariant, Task, Weight

__all__ = [
    "AffineTransform",
    "BackendLoadFailed",
    "CaptureFormat",
    "Detection",
    "DetectionPipeline",
    "DeviceNotFound",
    "DeviceOrientation",
    "DevicePosition",
    "DisplayTransformContext",
    "FormatNotFound",
    "FrameSource",
    "FrameThrottle",
    "InferenceFailed",
    "InferenceResult",
    "ModelDispatcher",
    "ModelVariant",
    "OpenCVDeviceProvider",
    "OverlayFrame",
    "PeriscopeError",
    "PipelineState",
    "PixelBuffer",
    "PixelEncoding",
    "SetupError",
    "SupportedVariant",
    "SyntheticCaptureDevice",
    "SyntheticDeviceProvider",
    "Task",
    "UnsupportedConfiguration",
    "Weight",
    "boxes_to_layer_space",
    "decode_detections",
    "layer_affine",
    "select_capture_format",
]
