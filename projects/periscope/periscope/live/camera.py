# projects/periscope/periscope/live/camera.py
"""
Capture devices and the frame source for live mode.

Devices come from a provider (OpenCV webcams with OS backend hints, or a
deterministic synthetic device for CI/headless runs). ``FrameSource`` owns
one capture session: a reader thread pulls frames off the device into a
capacity-1 slot, and every frame is handed to the observer on the single
worker context, in capture order, one at a time. Frames that arrive while
the observer is still busy replace each other in the slot and are counted
as dropped.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Protocol, Sequence, Tuple, cast

os.environ.setdefault("OPENCV_VIDEOIO_ENABLE_OBSENSOR", "0")

import cv2
import numpy as np

from periscope.logging_config import bind_context
from periscope.progress import simple_status

from ._types import NDArrayU8
from .channels import LatestSlot
from .errors import DeviceNotFound, FormatNotFound, SetupError
from .formats import DEFAULT_ENCODING, CaptureFormat, PixelEncoding, select_capture_format

LOGGER = logging.getLogger(__name__)

TRACE_CAMERA = os.getenv("PERISCOPE_LIVE_TRACE_CAMERA", "").strip().lower() in {"1", "true", "yes"}

# Consecutive failed reads before a session gives up on its device.
MAX_READ_FAILURES = 30

RESOLUTION_LADDER: Tuple[Tuple[int, int], ...] = (
    (640, 480),
    (1280, 720),
    (1920, 1080),
    (3840, 2160),
)
PROBE_ENCODINGS: Tuple[PixelEncoding, ...] = (PixelEncoding.NV12, PixelEncoding.YUYV, PixelEncoding.MJPG)


def _log(event: str, **info: object) -> None:
    if info:
        detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info(event)


@contextlib.contextmanager
def _temporary_cv2_log_level() -> Iterator[None]:
    """Suppress OpenCV's own logging while probing devices."""
    logging_mod = getattr(getattr(cv2, "utils", None), "logging", None)
    if logging_mod is None or not hasattr(logging_mod, "getLogLevel"):
        yield
        return
    prev_level = logging_mod.getLogLevel()
    logging_mod.setLogLevel(getattr(logging_mod, "LOG_LEVEL_SILENT", 0))
    try:
        yield
    finally:
        logging_mod.setLogLevel(prev_level)


class DevicePosition(str, Enum):
    BACK = "back"
    FRONT = "front"
    UNSPECIFIED = "unspecified"

    def matches(self, requested: "DevicePosition") -> bool:
        return self is DevicePosition.UNSPECIFIED or requested is DevicePosition.UNSPECIFIED or self is requested


@dataclass(frozen=True)
class PixelBuffer:
    """
    One decoded frame. ``data`` is a BGR ``uint8`` array of shape
    ``(height, width, 3)``; ``encoding`` records the capture layout it was
    decoded from. Consumers must not keep it past one processing step.
    """

    data: NDArrayU8 = field(repr=False)
    width: int
    height: int
    encoding: PixelEncoding
    index: int
    timestamp: float


class CaptureDevice(Protocol):
    name: str
    position: DevicePosition

    def formats(self) -> List[CaptureFormat]: ...
    def open(self, fmt: CaptureFormat) -> None: ...
    def read(self) -> Optional[NDArrayU8]: ...
    def release(self) -> None: ...


class CaptureDeviceProvider(Protocol):
    def devices(self, position: DevicePosition = DevicePosition.BACK) -> List[CaptureDevice]: ...


# ---------------------------------------------------------------------------
# OpenCV devices
# ---------------------------------------------------------------------------


def _decode_frame_to_bgr(frame: Any, encoding: Optional[PixelEncoding] = None) -> NDArrayU8:
    arr = np.asarray(frame)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8, copy=False)

    # OpenCV already converted to BGR (CAP_PROP_CONVERT_RGB on).
    if arr.ndim == 3 and arr.shape[2] == 3:
        return np.ascontiguousarray(arr)
    if arr.ndim == 3 and arr.shape[2] == 4:
        return cast(NDArrayU8, cv2.cvtColor(np.ascontiguousarray(arr), cv2.COLOR_BGRA2BGR))

    if encoding is PixelEncoding.NV12 and arr.ndim == 2:
        return cast(NDArrayU8, cv2.cvtColor(np.ascontiguousarray(arr), cv2.COLOR_YUV2BGR_NV12))
    if encoding is PixelEncoding.YUYV:
        if arr.ndim == 2 and arr.shape[1] % 2 == 0:
            arr = arr.reshape(arr.shape[0], arr.shape[1] // 2, 2)
        if arr.ndim == 3 and arr.shape[2] == 2:
            return cast(NDArrayU8, cv2.cvtColor(np.ascontiguousarray(arr), cv2.COLOR_YUV2BGR_YUY2))

    if arr.ndim == 3 and arr.shape[2] == 1:
        arr = arr.reshape(arr.shape[0], arr.shape[1])
    return cast(NDArrayU8, cv2.cvtColor(np.ascontiguousarray(np.atleast_2d(arr)), cv2.COLOR_GRAY2BGR))


def _guess_backend_ids() -> List[int]:
    """Platform-appropriate OpenCV backend ids, in the order to try them."""
    ids: List[int] = []
    plat = sys.platform
    if plat.startswith("win"):
        ids.append(getattr(cv2, "CAP_MSMF", 0))
    elif plat == "darwin":
        ids.append(getattr(cv2, "CAP_AVFOUNDATION", 0))
    elif "linux" in plat:
        ids.append(getattr(cv2, "CAP_V4L2", 0))
    out = [i for i in ids if i]
    out.append(0)  # default/auto
    return out


def _open_capture(index: int, backends: Sequence[int]) -> Tuple[Optional[Any], Optional[int]]:
    with _temporary_cv2_log_level():
        for be in backends:
            if TRACE_CAMERA:
                _log("live.camera.open.try", index=index, backend=be)
            cap = cv2.VideoCapture(index, be) if be else cv2.VideoCapture(index)
            if cap is not None and cap.isOpened():
                return cap, be
            if cap is not None:
                cap.release()
    return None, None


class OpenCVCaptureDevice:
    """A webcam reached through ``cv2.VideoCapture``."""

    position = DevicePosition.UNSPECIFIED

    def __init__(self, index: int, backend: Optional[int] = None) -> None:
        self.index = int(index)
        self.name = f"camera:{self.index}"
        self._backends = [backend] if backend is not None else _guess_backend_ids()
        self._cap: Optional[Any] = None
        self._format: Optional[CaptureFormat] = None

    def formats(self) -> List[CaptureFormat]:
        """
        OpenCV has no format enumeration, so request each FOURCC x resolution
        pair from the ladder and keep whatever the driver reports back.
        """
        cap, _ = _open_capture(self.index, self._backends)
        if cap is None:
            return []
        found: List[CaptureFormat] = []
        try:
            for enc in PROBE_ENCODINGS:
                for width, height in RESOLUTION_LADDER:
                    cap.set(cv2.CAP_PROP_FOURCC, float(enc.fourcc))
                    cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
                    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
                    actual = PixelEncoding.from_fourcc(cap.get(cv2.CAP_PROP_FOURCC))
                    if actual is None:
                        continue
                    fmt = CaptureFormat(
                        actual,
                        int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
                        int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
                    )
                    if fmt.width > 0 and fmt.height > 0 and fmt not in found:
                        found.append(fmt)
        finally:
            cap.release()
        _log("live.camera.formats", device=self.name, count=len(found))
        return found

    def open(self, fmt: CaptureFormat) -> None:
        cap, backend = _open_capture(self.index, self._backends)
        if cap is None:
            raise SetupError(f"Failed to open camera: {self.name}")
        cap.set(cv2.CAP_PROP_FOURCC, float(fmt.encoding.fourcc))
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(fmt.width))
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(fmt.height))
        cap.set(cv2.CAP_PROP_CONVERT_RGB, 1.0)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        if (width, height) != fmt.resolution:
            cap.release()
            raise SetupError(f"Camera {self.name} refused {fmt} (got {width}x{height})")
        self._cap = cap
        self._format = fmt
        _log("live.camera.open.ok", device=self.name, backend=backend, format=fmt)

    def read(self) -> Optional[NDArrayU8]:
        if self._cap is None:
            return None
        ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        return _decode_frame_to_bgr(frame, self._format.encoding if self._format else None)

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


class OpenCVDeviceProvider:
    """Enumerates webcams by index; the order of the returned list is the index order."""

    def __init__(self, indexes: Optional[Sequence[int]] = None, *, max_index: int = 4) -> None:
        self._indexes = list(indexes) if indexes is not None else list(range(max_index))

    def devices(self, position: DevicePosition = DevicePosition.BACK) -> List[CaptureDevice]:
        found: List[CaptureDevice] = []
        backends = _guess_backend_ids()
        for index in self._indexes:
            cap, backend = _open_capture(index, backends)
            if cap is None:
                continue
            cap.release()
            device = OpenCVCaptureDevice(index, backend)
            if device.position.matches(position):
                found.append(device)
        _log("live.camera.discover", position=position.value, count=len(found))
        return found


# ---------------------------------------------------------------------------
# Synthetic devices
# ---------------------------------------------------------------------------

SYNTHETIC_FORMATS: Tuple[CaptureFormat, ...] = (
    CaptureFormat(PixelEncoding.NV12, 640, 480),
    CaptureFormat(PixelEncoding.NV12, 1280, 720),
    CaptureFormat(PixelEncoding.YUYV, 1920, 1080),
)


class SyntheticCaptureDevice:
    """Gradient background with a bright square sweeping across; great for CI/headless."""

    def __init__(
        self,
        formats: Sequence[CaptureFormat] = SYNTHETIC_FORMATS,
        *,
        fps: float = 30.0,
        name: str = "synthetic",
        position: DevicePosition = DevicePosition.BACK,
        fail_open: bool = False,
        max_frames: Optional[int] = None,
    ) -> None:
        self.name = name
        self.position = position
        self._formats = list(formats)
        self._period = 1.0 / fps if fps > 0 else 0.0
        self._fail_open = fail_open
        self._max_frames = max_frames
        self._size: Optional[Tuple[int, int]] = None
        self._n = 0
        self._last = 0.0
        self.opened = False
        self.released = False

    def formats(self) -> List[CaptureFormat]:
        return list(self._formats)

    def open(self, fmt: CaptureFormat) -> None:
        if self._fail_open:
            raise SetupError(f"Failed to open camera: {self.name}")
        self._size = fmt.resolution
        self._n = 0
        self.opened = True
        self.released = False
        _log("live.camera.synthetic", size=f"{fmt.width}x{fmt.height}", fps=round(1.0 / self._period) if self._period else None)

    def read(self) -> Optional[NDArrayU8]:
        if self._size is None:
            return None
        if self._max_frames is not None and self._n >= self._max_frames:
            return None
        if self._period:
            delay = self._period - (time.perf_counter() - self._last)
            if delay > 0:
                time.sleep(delay)
            self._last = time.perf_counter()
        w, h = self._size
        y = np.linspace(0, 255, h, dtype=np.uint8)[:, None]
        x = np.linspace(0, 255, w, dtype=np.uint8)[None, :]
        base = ((y.astype(np.uint16) + x) // 2).astype(np.uint8)
        frame = np.dstack([base, base // 2, 255 - base])
        side = max(1, min(w, h) // 4)
        x0 = (self._n * 8) % max(1, w - side)
        y0 = (h - side) // 2
        frame[y0:y0 + side, x0:x0 + side] = 255
        self._n += 1
        return frame

    def release(self) -> None:
        self._size = None
        self.released = True


class SyntheticDeviceProvider:
    def __init__(self, devices: Optional[Sequence[CaptureDevice]] = None) -> None:
        self._devices: List[CaptureDevice] = list(devices) if devices is not None else [SyntheticCaptureDevice()]

    def devices(self, position: DevicePosition = DevicePosition.BACK) -> List[CaptureDevice]:
        return [d for d in self._devices if d.position.matches(position)]


# ---------------------------------------------------------------------------
# Frame source
# ---------------------------------------------------------------------------

FrameObserver = Callable[[PixelBuffer], None]


class FrameSource:
    """
    One capture session delivering frames on a sequential worker.

    ``start()``/``stop()`` return immediately; the session is opened and
    closed on the worker and the returned futures resolve once that happened.
    Both are idempotent. A failed start leaves no active session, and the
    error is set on the future and passed to ``on_error``.
    """

    def __init__(
        self,
        provider: CaptureDeviceProvider,
        *,
        required_encoding: PixelEncoding = DEFAULT_ENCODING,
        position: DevicePosition = DevicePosition.BACK,
        executor: Optional[ThreadPoolExecutor] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self._provider = provider
        self.required_encoding = required_encoding
        self.position = position
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="periscope-worker")
        self._on_error = on_error
        self._observer: Optional[FrameObserver] = None

        self._slot: LatestSlot[PixelBuffer] = LatestSlot()
        self._lock = threading.Lock()
        self._delivery_scheduled = False

        # Session state, touched only on the worker.
        self._device: Optional[CaptureDevice] = None
        self._format: Optional[CaptureFormat] = None
        self._reader: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._active = False

    # ----------------- public API -----------------

    def set_observer(self, observer: Optional[FrameObserver]) -> None:
        self._observer = observer

    @property
    def active(self) -> bool:
        return self._active

    @property
    def capture_format(self) -> Optional[CaptureFormat]:
        return self._format

    @property
    def dropped(self) -> int:
        return self._slot.dropped

    def submit(self, fn: Callable[..., Any], *args: Any) -> "Future[Any]":
        """Run ``fn`` on the worker, after everything already queued there."""
        return self._executor.submit(fn, *args)

    def start(self) -> "Future[Optional[CaptureFormat]]":
        return self._executor.submit(self.open_session)

    def stop(self) -> "Future[None]":
        return self._executor.submit(self.close_session)

    def shutdown(self) -> None:
        """Close the session and, if this source created it, the worker."""
        if not self._owns_executor:
            return
        self.stop().result()
        self._executor.shutdown(wait=True)

    # ----------------- worker-side session control -----------------

    def open_session(self) -> CaptureFormat:
        """Open the capture session. Runs on the worker; a no-op when already active."""
        if not self._active:
            try:
                with bind_context(component="camera", position=self.position.value):
                    with simple_status("Opening camera"):
                        self._setup()
                if self._format is None:
                    raise SetupError("Capture session opened without a capture format")
            except Exception as exc:
                _log_error("live.camera.setup.failed", error=type(exc).__name__, reason=str(exc))
                if self._on_error is not None:
                    self._on_error(exc)
                raise
        return cast(CaptureFormat, self._format)

    def close_session(self) -> None:
        """Stop the reader and release the device. Runs on the worker; idempotent."""
        if not self._active:
            return
        self._active = False
        self._stop_event.set()
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2.0)
        self._reader = None
        if self._device is not None:
            self._device.release()
        self._slot.close()
        _log("live.camera.session.stopped", device=getattr(self._device, "name", None), dropped=self._slot.dropped)
        self._device = None

    def _setup(self) -> None:
        devices = self._provider.devices(self.position)
        if not devices:
            raise DeviceNotFound(self.position.value)
        device = devices[0]
        fmt = select_capture_format(device.formats(), self.required_encoding)
        if fmt is None:
            raise FormatNotFound(device.name, self.required_encoding.value)
        try:
            device.open(fmt)
        except Exception:
            device.release()
            raise

        self._device = device
        self._format = fmt
        self._slot = LatestSlot()
        self._stop_event = threading.Event()
        self._active = True
        self._reader = threading.Thread(
            target=self._reader_loop,
            args=(device, fmt, self._slot, self._stop_event),
            name="periscope-capture",
            daemon=True,
        )
        self._reader.start()
        _log("live.camera.session.started", device=device.name, format=fmt)

    # ----------------- capture → worker hand-off -----------------

    def _reader_loop(
        self,
        device: CaptureDevice,
        fmt: CaptureFormat,
        slot: LatestSlot[PixelBuffer],
        stop_event: threading.Event,
    ) -> None:
        index = 0
        failures = 0
        while not stop_event.is_set():
            try:
                frame = device.read()
            except Exception as exc:
                _log_error("live.camera.read.error", device=device.name, error=type(exc).__name__)
                frame = None
            if frame is None:
                failures += 1
                if failures >= MAX_READ_FAILURES:
                    _log_error("live.camera.read.failed", device=device.name, reason="no frames")
                    failures = 0
                stop_event.wait(0.01)
                continue
            failures = 0
            height, width = frame.shape[:2]
            slot.put(PixelBuffer(frame, width, height, fmt.encoding, index, time.time()))
            index += 1
            self._schedule_delivery()

    def _schedule_delivery(self) -> None:
        with self._lock:
            if self._delivery_scheduled:
                return
            self._delivery_scheduled = True
        try:
            self._executor.submit(self._deliver)
        except RuntimeError:
            # Worker already shut down.
            with self._lock:
                self._delivery_scheduled = False

    def _deliver(self) -> None:
        with self._lock:
            self._delivery_scheduled = False
        buffer = self._slot.take()
        if buffer is None or not self._active:
            return
        observer = self._observer
        if observer is None:
            return
        try:
            observer(buffer)
        except Exception:
            LOGGER.exception("live.camera.observer.error index=%s", buffer.index)


def _log_error(event: str, **info: object) -> None:
    detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
    LOGGER.error("%s %s", event, detail)
