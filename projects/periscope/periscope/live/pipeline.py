# projects/periscope/periscope/live/pipeline.py
"""
Detection pipeline: frame source -> throttle -> model -> overlay geometry -> sink.

All per-frame work runs on the frame source's worker, one frame at a time.
The sink is the only thing the UI side sees; it receives an ``OverlayFrame``
per accepted frame and never touches pipeline state.

States::

    IDLE -> CONFIGURING -> RUNNING -> STOPPED
    CONFIGURING -> IDLE        (setup failed)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, Tuple

from .camera import FrameSource, PixelBuffer
from .dispatcher import ModelDispatcher, decode_detections
from .errors import InferenceFailed
from .geometry import (
    AffineTransform,
    DeviceOrientation,
    DisplayTransformContext,
    OverlayBox,
    Rect,
    boxes_to_layer_space,
    layer_affine,
    layer_bounds,
    layer_position,
)
from .throttle import FrameThrottle
from .variants import AnyVariant, SupportedVariant

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())


def _log(event: str, level: int = logging.INFO, **info: object) -> None:
    detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
    LOGGER.log(level, "%s %s", event, detail)


class PipelineState(str, Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class OverlayFrame:
    """Everything a rendering sink needs to paint one accepted frame."""

    boxes: Tuple[OverlayBox, ...]
    transform: AffineTransform
    position: Tuple[float, float]
    bounds: Rect
    context: DisplayTransformContext
    variant: SupportedVariant
    frame_index: int


class OverlaySink(Protocol):
    def render(self, frame: OverlayFrame) -> None: ...


@dataclass
class PipelineStats:
    received: int = 0
    throttled: int = 0
    failed: int = 0
    rendered: int = 0
    discarded: int = 0


def _done_future() -> "Future[None]":
    fut: "Future[None]" = Future()
    fut.set_result(None)
    return fut


class DetectionPipeline:
    """
    Owns the frame source, the dispatcher and the throttle for one variant.

    ``start()`` validates the variant immediately (an unsupported pair raises
    ``UnsupportedConfiguration`` right here), then loads the model and opens
    the camera on the worker. The returned future fails with the setup error,
    if any, and the pipeline drops back to IDLE.
    """

    def __init__(
        self,
        source: FrameSource,
        dispatcher: ModelDispatcher,
        variant: AnyVariant,
        sink: OverlaySink,
        *,
        throttle: Optional[FrameThrottle] = None,
        preview_size: Optional[Tuple[float, float]] = None,
        orientation: DeviceOrientation = DeviceOrientation.PORTRAIT,
        preview: Optional[Callable[[PixelBuffer], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self._source = source
        self._dispatcher = dispatcher
        self._variant = variant
        self._sink = sink
        self._throttle = throttle or FrameThrottle()
        self._preview_size = preview_size
        self._orientation = orientation
        self._preview = preview
        self._on_error = on_error

        self._lock = threading.Lock()
        self._state = PipelineState.IDLE
        self._key: Optional[SupportedVariant] = None
        self._context: Optional[DisplayTransformContext] = None
        self._start_future: "Future[None]" = _done_future()
        self.stats = PipelineStats()

        self._source.set_observer(self._on_frame)

    # ----------------- public API -----------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def display_context(self) -> Optional[DisplayTransformContext]:
        return self._context

    @property
    def dropped_late(self) -> int:
        return self._source.dropped

    def start(self) -> "Future[None]":
        with self._lock:
            if self._state in (PipelineState.CONFIGURING, PipelineState.RUNNING):
                return self._start_future
            key = self._dispatcher.supported(self._variant)
            self._key = key
            self._set_state(PipelineState.CONFIGURING)
            self._throttle.reset()
            self._start_future = self._source.submit(self._configure, key)
            return self._start_future

    def stop(self) -> "Future[None]":
        """Stop capturing. Results still in flight are discarded; nothing is emitted after this returns."""
        with self._lock:
            if self._state in (PipelineState.IDLE, PipelineState.STOPPED):
                return _done_future()
            self._set_state(PipelineState.STOPPED)
        return self._source.stop()

    def shutdown(self) -> None:
        self.stop().result()
        self._source.shutdown()

    def update_layout(
        self,
        preview_size: Optional[Tuple[float, float]] = None,
        orientation: Optional[DeviceOrientation] = None,
    ) -> Optional[DisplayTransformContext]:
        """Recompute the display context after a layout or orientation change."""
        with self._lock:
            if preview_size is not None:
                self._preview_size = preview_size
            if orientation is not None:
                self._orientation = orientation
            fmt = self._source.capture_format
            if fmt is not None:
                self._context = self._build_context(fmt.resolution)
            return self._context

    def __enter__(self) -> "DetectionPipeline":
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()

    # ----------------- worker side -----------------

    def _configure(self, key: SupportedVariant) -> None:
        try:
            self._dispatcher.load(key)
            fmt = self._source.open_session()
        except Exception as exc:
            with self._lock:
                if self._state is PipelineState.CONFIGURING:
                    self._set_state(PipelineState.IDLE)
            _log("live.pipeline.setup.failed", logging.ERROR, variant=key, error=type(exc).__name__, reason=str(exc))
            if self._on_error is not None:
                self._on_error(exc)
            raise
        with self._lock:
            if self._state is not PipelineState.CONFIGURING:
                # stop() arrived mid-setup; its close is queued behind us.
                return
            self._context = self._build_context(fmt.resolution)
            self._set_state(PipelineState.RUNNING)

    def _on_frame(self, buffer: PixelBuffer) -> None:
        if self._state is not PipelineState.RUNNING or self._key is None:
            return
        self.stats.received += 1
        if self._preview is not None:
            self._preview(buffer)
        if not self._throttle.should_process():
            self.stats.throttled += 1
            return

        try:
            result = self._dispatcher.predict(self._key, buffer)
        except InferenceFailed as exc:
            self.stats.failed += 1
            _log(
                "live.pipeline.frame.failed",
                logging.WARNING,
                frame=buffer.index,
                variant=self._key,
                error=type(exc.__cause__).__name__ if exc.__cause__ else None,
            )
            return

        context = self._context
        if context is None:
            return
        frame = OverlayFrame(
            boxes=tuple(boxes_to_layer_space(decode_detections(result), context)),
            transform=layer_affine(context),
            position=layer_position(context),
            bounds=layer_bounds(context),
            context=context,
            variant=self._key,
            frame_index=buffer.index,
        )
        with self._lock:
            if self._state is not PipelineState.RUNNING:
                self.stats.discarded += 1
                return
            self._sink.render(frame)
            self.stats.rendered += 1

    def _build_context(self, capture_resolution: Tuple[int, int]) -> DisplayTransformContext:
        cap_w, cap_h = capture_resolution
        # Without a layout yet, show the full sensor frame portrait-rotated.
        preview = self._preview_size if self._preview_size is not None else (cap_h, cap_w)
        return DisplayTransformContext(self._orientation, (cap_w, cap_h), preview)

    def _set_state(self, state: PipelineState) -> None:
        if state is not self._state:
            _log("live.pipeline.state", previous=self._state.value, state=state.value)
        self._state = state
