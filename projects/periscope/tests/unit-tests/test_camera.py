from __future__ import annotations

import threading
import time
from typing import Any, Callable, List

import numpy as np
import pytest

from periscope.live.camera import (
    DevicePosition,
    FrameSource,
    PixelBuffer,
    SyntheticCaptureDevice,
    SyntheticDeviceProvider,
    _decode_frame_to_bgr,
)
from periscope.live.errors import DeviceNotFound, FormatNotFound, SetupError
from periscope.live.formats import CaptureFormat, PixelEncoding

SMALL = (CaptureFormat(PixelEncoding.NV12, 32, 24), CaptureFormat(PixelEncoding.NV12, 64, 48))


class CountingDevice(SyntheticCaptureDevice):
    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("formats", SMALL)
        kwargs.setdefault("fps", 200.0)
        super().__init__(**kwargs)
        self.open_calls = 0

    def open(self, fmt: CaptureFormat) -> None:
        self.open_calls += 1
        super().open(fmt)


def _source(device: SyntheticCaptureDevice, **kwargs: Any) -> FrameSource:
    return FrameSource(SyntheticDeviceProvider([device]), **kwargs)


def test_start_selects_widest_format_and_delivers_frames(wait_until: Callable[..., bool]) -> None:
    device = CountingDevice()
    source = _source(device)
    seen: List[PixelBuffer] = []
    source.set_observer(seen.append)
    try:
        fmt = source.start().result(timeout=5)
        assert fmt == CaptureFormat(PixelEncoding.NV12, 64, 48)
        assert source.active
        assert wait_until(lambda: len(seen) >= 5)
    finally:
        source.shutdown()
    frame = seen[0]
    assert frame.data.shape == (48, 64, 3)
    assert (frame.width, frame.height) == (64, 48)
    assert frame.encoding is PixelEncoding.NV12


def test_frames_in_order_on_one_thread_without_overlap(wait_until: Callable[..., bool]) -> None:
    source = _source(CountingDevice(fps=0.0))
    indexes: List[int] = []
    threads: set = set()
    busy = threading.Event()
    overlapped: List[bool] = []

    def slow_observer(buffer: PixelBuffer) -> None:
        overlapped.append(busy.is_set())
        busy.set()
        threads.add(threading.current_thread().name)
        indexes.append(buffer.index)
        time.sleep(0.01)
        busy.clear()

    source.set_observer(slow_observer)
    try:
        source.start().result(timeout=5)
        assert wait_until(lambda: len(indexes) >= 10)
    finally:
        source.shutdown()

    assert indexes == sorted(indexes)
    assert len(set(indexes)) == len(indexes)
    assert not any(overlapped)
    assert len(threads) == 1
    # A slow observer makes the capture side discard late frames.
    assert source.dropped > 0


def test_start_and_stop_are_idempotent(wait_until: Callable[..., bool]) -> None:
    device = CountingDevice()
    source = _source(device)
    try:
        first = source.start()
        second = source.start()
        assert first.result(timeout=5) == second.result(timeout=5)
        assert device.open_calls == 1

        source.stop().result(timeout=5)
        source.stop().result(timeout=5)
        assert not source.active
        assert device.released
    finally:
        source.shutdown()


def test_no_frames_after_stop(wait_until: Callable[..., bool]) -> None:
    source = _source(CountingDevice())
    seen: List[int] = []
    source.set_observer(lambda buf: seen.append(buf.index))
    try:
        source.start().result(timeout=5)
        assert wait_until(lambda: len(seen) >= 2)
        source.stop().result(timeout=5)
        count = len(seen)
        time.sleep(0.05)
        assert len(seen) == count
    finally:
        source.shutdown()


def test_restart_after_stop(wait_until: Callable[..., bool]) -> None:
    device = CountingDevice()
    source = _source(device)
    seen: List[int] = []
    source.set_observer(lambda buf: seen.append(buf.index))
    try:
        source.start().result(timeout=5)
        source.stop().result(timeout=5)
        seen.clear()
        source.start().result(timeout=5)
        assert wait_until(lambda: len(seen) >= 1)
        assert device.open_calls == 2
    finally:
        source.shutdown()


def test_missing_device_is_reported() -> None:
    errors: List[BaseException] = []
    source = FrameSource(SyntheticDeviceProvider([]), on_error=errors.append)
    try:
        with pytest.raises(DeviceNotFound):
            source.start().result(timeout=5)
    finally:
        source.shutdown()
    assert not source.active
    assert len(errors) == 1 and isinstance(errors[0], DeviceNotFound)


def test_device_position_must_match() -> None:
    front = CountingDevice(position=DevicePosition.FRONT)
    source = _source(front, position=DevicePosition.BACK)
    try:
        with pytest.raises(DeviceNotFound):
            source.start().result(timeout=5)
    finally:
        source.shutdown()
    assert front.open_calls == 0


def test_missing_format_is_reported() -> None:
    device = CountingDevice(formats=(CaptureFormat(PixelEncoding.YUYV, 1920, 1080),))
    source = _source(device)
    try:
        with pytest.raises(FormatNotFound):
            source.start().result(timeout=5)
    finally:
        source.shutdown()
    assert device.open_calls == 0
    assert not source.active


def test_open_failure_releases_device() -> None:
    device = CountingDevice(fail_open=True)
    source = _source(device)
    try:
        with pytest.raises(SetupError):
            source.start().result(timeout=5)
    finally:
        source.shutdown()
    assert device.released
    assert not source.active


def test_required_encoding_is_configurable(wait_until: Callable[..., bool]) -> None:
    device = CountingDevice(formats=SMALL + (CaptureFormat(PixelEncoding.YUYV, 96, 72),))
    source = _source(device, required_encoding=PixelEncoding.YUYV)
    try:
        assert source.start().result(timeout=5) == CaptureFormat(PixelEncoding.YUYV, 96, 72)
    finally:
        source.shutdown()


def test_decode_passthrough_and_gray() -> None:
    bgr = np.zeros((4, 6, 3), dtype=np.uint8)
    assert _decode_frame_to_bgr(bgr) is not None
    assert _decode_frame_to_bgr(bgr).shape == (4, 6, 3)
    gray = np.full((4, 6), 128, dtype=np.uint8)
    out = _decode_frame_to_bgr(gray)
    assert out.shape == (4, 6, 3)
    assert int(out[0, 0, 0]) == 128
    nv12 = np.zeros((6, 4), dtype=np.uint8)  # 4x4 image: 4 rows Y + 2 rows UV
    assert _decode_frame_to_bgr(nv12, PixelEncoding.NV12).shape == (4, 4, 3)
