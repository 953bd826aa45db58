# projects/periscope/periscope/live/sinks.py
"""
Rendering sinks for overlay frames.

The pipeline worker calls ``render``; anything slow (painting, window
events) belongs to the UI thread, which pulls the newest frame from a
``ChannelSink``. ``DisplaySink`` paints with OpenCV HighGUI.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ._types import NDArrayU8
from .channels import LatestSlot
from .geometry import DisplayTransformContext, OverlayBox, container_transform
from .pipeline import OverlayFrame

LOGGER = logging.getLogger(__name__)

BOX_COLOR: Tuple[int, int, int] = (0, 210, 255)
TEXT_COLOR: Tuple[int, int, int] = (0, 0, 0)


def _log(event: str, **info: object) -> None:
    if info:
        detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info(event)


class ChannelSink:
    """Hands overlay frames to another thread; only the newest one is kept."""

    def __init__(self) -> None:
        self._slot: LatestSlot[OverlayFrame] = LatestSlot()

    def render(self, frame: OverlayFrame) -> None:
        self._slot.put(frame)

    def latest(self, timeout: Optional[float] = None) -> Optional[OverlayFrame]:
        if timeout is None:
            return self._slot.take()
        return self._slot.wait(timeout)

    @property
    def dropped(self) -> int:
        return self._slot.dropped


class CollectingSink:
    """Keeps every overlay frame it is given (headless runs and tests)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frames: List[OverlayFrame] = []

    def render(self, frame: OverlayFrame) -> None:
        with self._lock:
            self._frames.append(frame)

    @property
    def frames(self) -> List[OverlayFrame]:
        with self._lock:
            return list(self._frames)


def render_preview(frame_bgr: NDArrayU8, context: DisplayTransformContext) -> NDArrayU8:
    """Aspect-filled, rotated camera image in preview space; boxes from the same context line up with it."""
    matrix = np.asarray(container_transform(context).as_matrix(), dtype=np.float32)
    width, height = (max(1, int(round(v))) for v in context.preview_size)
    return np.ascontiguousarray(cv2.warpAffine(frame_bgr, matrix, (width, height), flags=cv2.INTER_LINEAR))


def draw_boxes(canvas: NDArrayU8, boxes: Sequence[OverlayBox]) -> NDArrayU8:
    """Rectangles plus ``label conf`` tags, in place."""
    for box in boxes:
        r = box.rect
        p0 = (int(round(r.x)), int(round(r.y)))
        p1 = (int(round(r.max_x)), int(round(r.max_y)))
        cv2.rectangle(canvas, p0, p1, BOX_COLOR, 2, cv2.LINE_AA)
        tag = f"{box.label} {box.confidence:.2f}"
        (tw, th), baseline = cv2.getTextSize(tag, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 1)
        top = max(0, p0[1] - th - baseline - 2)
        cv2.rectangle(canvas, (p0[0], top), (p0[0] + tw + 4, top + th + baseline + 2), BOX_COLOR, -1)
        cv2.putText(canvas, tag, (p0[0] + 2, top + th), cv2.FONT_HERSHEY_SIMPLEX, 0.5, TEXT_COLOR, 1, cv2.LINE_AA)
    return canvas


def hud(canvas: NDArrayU8, lines: Sequence[str]) -> NDArrayU8:
    """Small status block in the top-left corner, in place."""
    y = 18
    for line in lines:
        cv2.putText(canvas, line, (8, y), cv2.FONT_HERSHEY_SIMPLEX, 0.45, (0, 0, 0), 3, cv2.LINE_AA)
        cv2.putText(canvas, line, (8, y), cv2.FONT_HERSHEY_SIMPLEX, 0.45, (255, 255, 255), 1, cv2.LINE_AA)
        y += 18
    return canvas


def compose(
    frame_bgr: Optional[NDArrayU8],
    overlay: Optional[OverlayFrame],
    context: DisplayTransformContext,
    *,
    status: Sequence[str] = (),
) -> NDArrayU8:
    """Preview image with the latest overlay painted on top."""
    if frame_bgr is not None:
        canvas = render_preview(frame_bgr, context)
    else:
        width, height = (max(1, int(round(v))) for v in context.preview_size)
        canvas = np.zeros((height, width, 3), dtype=np.uint8)
    if overlay is not None:
        draw_boxes(canvas, overlay.boxes)
    if status:
        hud(canvas, status)
    return canvas


class DisplaySink:
    """
    OpenCV HighGUI window. ``headless=True`` turns every call into a no-op so
    the same loop runs in CI.
    """

    def __init__(self, title: str = "Periscope", headless: bool = False) -> None:
        self.title = title
        self.headless = bool(headless)
        self._window_ready = False
        self._closed = False
        _log("live.display.init", headless=self.headless)

    def show(self, frame_bgr: NDArrayU8) -> None:
        if self.headless or self._closed:
            return
        if not self._window_ready:
            cv2.namedWindow(self.title, cv2.WINDOW_AUTOSIZE)
            self._window_ready = True
        cv2.imshow(self.title, frame_bgr)

    def poll_key(self) -> int:
        if self.headless or not self._window_ready:
            return -1
        return cv2.waitKey(1) & 0xFF

    def is_open(self) -> bool:
        if self.headless:
            return True
        if self._closed:
            return False
        if not self._window_ready:
            return True
        return cv2.getWindowProperty(self.title, cv2.WND_PROP_VISIBLE) >= 1.0

    def close(self) -> None:
        if self._window_ready and not self._closed:
            cv2.destroyWindow(self.title)
        self._closed = True
