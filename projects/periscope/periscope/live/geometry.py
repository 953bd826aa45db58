"""
Overlay geometry: normalized model boxes to on-screen layer rectangles.

The camera sensor is mounted landscape while the UI is locked portrait, so
the overlay container is sized to the sensor resolution, rotated +90 degrees
and scaled with a vertical mirror, then centred on the visible preview.
Width and height are swapped in the scale factors for the same reason.

Affine transforms follow the 2D graphics convention::

    x' = a*x + c*y + tx
    y' = b*x + d*y + ty
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Tuple, Union

from ._types import NormalizedBox, Size

if TYPE_CHECKING:
    from .dispatcher import Detection


class DeviceOrientation(str, Enum):
    PORTRAIT = "portrait"
    PORTRAIT_UPSIDE_DOWN = "portraitUpsideDown"
    LANDSCAPE_LEFT = "landscapeLeft"
    LANDSCAPE_RIGHT = "landscapeRight"

    @classmethod
    def parse(cls, value: Union[str, "DeviceOrientation"]) -> "DeviceOrientation":
        if isinstance(value, DeviceOrientation):
            return value
        key = str(value).strip().replace("-", "").replace("_", "").lower()
        for member in cls:
            if key == member.value.lower():
                return member
        raise ValueError(f"Unknown orientation: {value!r}")


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_corners(cls, x0: float, y0: float, x1: float, y1: float) -> "Rect":
        left, right = min(x0, x1), max(x0, x1)
        top, bottom = min(y0, y1), max(y0, y1)
        return cls(left, top, right - left, bottom - top)

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    def corners(self) -> List[Tuple[float, float]]:
        return [(self.x, self.y), (self.max_x, self.y), (self.max_x, self.max_y), (self.x, self.max_y)]


def _snap(value: float) -> float:
    # cos(pi/2) is 6e-17, not 0
    return 0.0 if abs(value) < 1e-12 else value


@dataclass(frozen=True)
class AffineTransform:
    a: float = 1.0
    b: float = 0.0
    c: float = 0.0
    d: float = 1.0
    tx: float = 0.0
    ty: float = 0.0

    @classmethod
    def identity(cls) -> "AffineTransform":
        return cls()

    @classmethod
    def rotation(cls, angle: float) -> "AffineTransform":
        cos, sin = _snap(math.cos(angle)), _snap(math.sin(angle))
        return cls(cos, sin, -sin, cos, 0.0, 0.0)

    def scaled_by(self, sx: float, sy: float) -> "AffineTransform":
        """Scale first, then apply ``self``."""
        return AffineTransform(self.a * sx, self.b * sx, self.c * sy, self.d * sy, self.tx, self.ty)

    def concat(self, other: "AffineTransform") -> "AffineTransform":
        """Apply ``self`` first, then ``other``."""
        return AffineTransform(
            self.a * other.a + self.b * other.c,
            self.a * other.b + self.b * other.d,
            self.c * other.a + self.d * other.c,
            self.c * other.b + self.d * other.d,
            self.tx * other.a + self.ty * other.c + other.tx,
            self.tx * other.b + self.ty * other.d + other.ty,
        )

    def as_matrix(self) -> List[List[float]]:
        """2x3 row-major matrix, the layout ``cv2.warpAffine`` takes."""
        return [[self.a, self.c, self.tx], [self.b, self.d, self.ty]]

    def apply(self, x: float, y: float) -> Tuple[float, float]:
        return (self.a * x + self.c * y + self.tx, self.b * x + self.d * y + self.ty)

    def apply_rect(self, rect: Rect) -> Rect:
        """Bounding rectangle of ``rect``'s transformed corners."""
        points = [self.apply(x, y) for x, y in rect.corners()]
        xs = [p[0] for p in points]
        ys = [p[1] for p in points]
        return Rect.from_corners(min(xs), min(ys), max(xs), max(ys))


@dataclass(frozen=True)
class DisplayTransformContext:
    orientation: DeviceOrientation
    capture_resolution: Size
    preview_size: Size


@dataclass(frozen=True)
class OverlayBox:
    rect: Rect
    sensor_rect: Rect
    label: str
    confidence: float


def overlay_scale(context: DisplayTransformContext) -> float:
    """Aspect-fill scale from sensor pixels to preview points; 1.0 for degenerate layouts."""
    cap_w, cap_h = context.capture_resolution
    prev_w, prev_h = context.preview_size
    if not (cap_w and cap_h and prev_w and prev_h):
        return 1.0
    scale = max(prev_w / cap_h, prev_h / cap_w)
    if not math.isfinite(scale) or scale <= 0.0:
        return 1.0
    return float(scale)


def layer_affine(context: DisplayTransformContext) -> AffineTransform:
    """Transform of the overlay container: rotate +90 degrees, then scale by (s, -s)."""
    scale = overlay_scale(context)
    # The UI is portrait-locked; other orientations keep the portrait mapping.
    return AffineTransform.rotation(math.pi / 2.0).scaled_by(scale, -scale)


def layer_bounds(context: DisplayTransformContext) -> Rect:
    """Overlay container bounds in sensor pixels."""
    cap_w, cap_h = context.capture_resolution
    return Rect(0.0, 0.0, float(cap_w), float(cap_h))


def layer_position(context: DisplayTransformContext) -> Tuple[float, float]:
    """The container is always centred on the visible preview."""
    prev_w, prev_h = context.preview_size
    return (prev_w / 2.0, prev_h / 2.0)


def sensor_rect(box: NormalizedBox, context: DisplayTransformContext) -> Rect:
    cap_w, cap_h = context.capture_resolution
    x0, y0, x1, y1 = box
    return Rect.from_corners(x0 * cap_w, y0 * cap_h, x1 * cap_w, y1 * cap_h)


def container_transform(context: DisplayTransformContext) -> AffineTransform:
    """
    Full sensor-pixel to screen mapping: move the container's centre to the
    origin, apply ``layer_affine``, then move it to ``layer_position``.
    """
    mid_x, mid_y = layer_bounds(context).center
    pos_x, pos_y = layer_position(context)
    to_anchor = AffineTransform(tx=-mid_x, ty=-mid_y)
    to_position = AffineTransform(tx=pos_x, ty=pos_y)
    return to_anchor.concat(layer_affine(context)).concat(to_position)


def boxes_to_layer_space(detections: Iterable["Detection"], context: DisplayTransformContext) -> List[OverlayBox]:
    """Map each detection to its on-screen rectangle; label and confidence pass through."""
    transform = container_transform(context)
    out: List[OverlayBox] = []
    for det in detections:
        sensor = sensor_rect(det.normalized_box, context)
        out.append(OverlayBox(transform.apply_rect(sensor), sensor, det.label, det.confidence))
    return out
