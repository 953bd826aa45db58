from __future__ import annotations

import threading
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from periscope.live.camera import FrameSource, PixelBuffer, SyntheticCaptureDevice, SyntheticDeviceProvider
from periscope.live.config import PlatformCapabilities
from periscope.live.dispatcher import ModelDispatcher
from periscope.live.errors import DeviceNotFound, SetupError, UnsupportedConfiguration
from periscope.live.formats import CaptureFormat, PixelEncoding
from periscope.live.geometry import DeviceOrientation, DisplayTransformContext, layer_affine
from periscope.live.pipeline import DetectionPipeline, PipelineState
from periscope.live.sinks import CollectingSink
from periscope.live.throttle import FrameThrottle
from periscope.live.variants import AnyVariant, ModelVariant, SupportedVariant

SMALL: Tuple[CaptureFormat, ...] = (CaptureFormat(PixelEncoding.NV12, 64, 48),)


def _pipeline(
    factory: Any,
    capabilities: PlatformCapabilities,
    *,
    variant: AnyVariant = SupportedVariant.DETECT_NANO,
    formats: Sequence[CaptureFormat] = SMALL,
    devices: Optional[List[SyntheticCaptureDevice]] = None,
    **kwargs: Any,
) -> Tuple[DetectionPipeline, CollectingSink]:
    if devices is None:
        devices = [SyntheticCaptureDevice(formats=formats, fps=120.0)]
    source = FrameSource(SyntheticDeviceProvider(devices))
    sink = CollectingSink()
    pipeline = DetectionPipeline(source, ModelDispatcher(factory, capabilities=capabilities), variant, sink, **kwargs)
    return pipeline, sink


def test_detection_overlay_lands_in_preview_centre(
    fake_factory: Any,
    capabilities: PlatformCapabilities,
    wait_until: Callable[..., bool],
) -> None:
    pipeline, sink = _pipeline(
        fake_factory,
        capabilities,
        variant=ModelVariant.of("detection", "nano"),
        formats=(CaptureFormat(PixelEncoding.NV12, 1080, 1920),),
        preview_size=(390, 844),
    )
    with pipeline:
        pipeline.start().result(timeout=10)
        assert wait_until(lambda: len(sink.frames) >= 1, timeout=10)

    overlay = sink.frames[0]
    assert overlay.context == DisplayTransformContext(DeviceOrientation.PORTRAIT, (1080, 1920), (390, 844))
    assert overlay.transform == layer_affine(overlay.context)
    assert overlay.position == (195.0, 422.0)
    (box,) = overlay.boxes
    cx, cy = box.rect.center
    assert 130.0 <= cx <= 260.0
    assert 844 / 3 <= cy <= 2 * 844 / 3
    assert box.label == "person"
    assert box.confidence == pytest.approx(0.9)
    assert overlay.variant is SupportedVariant.DETECT_NANO


def test_state_machine(fake_factory: Any, capabilities: PlatformCapabilities) -> None:
    pipeline, _ = _pipeline(fake_factory, capabilities)
    assert pipeline.state is PipelineState.IDLE
    try:
        pipeline.start().result(timeout=5)
        assert pipeline.state is PipelineState.RUNNING
        # start() while running is a no-op
        pipeline.start().result(timeout=5)
        assert fake_factory.loaded == [SupportedVariant.DETECT_NANO]

        pipeline.stop().result(timeout=5)
        assert pipeline.state is PipelineState.STOPPED
        pipeline.stop().result(timeout=5)
        assert pipeline.state is PipelineState.STOPPED

        pipeline.start().result(timeout=5)
        assert pipeline.state is PipelineState.RUNNING
    finally:
        pipeline.shutdown()
    assert pipeline.state is PipelineState.STOPPED


def test_unsupported_variant_fails_fast(fake_factory: Any, capabilities: PlatformCapabilities) -> None:
    device = SyntheticCaptureDevice(formats=SMALL)
    pipeline, _ = _pipeline(fake_factory, capabilities, variant=ModelVariant.of("d", "m"), devices=[device])
    try:
        with pytest.raises(UnsupportedConfiguration):
            pipeline.start()
        assert pipeline.state is PipelineState.IDLE
        assert fake_factory.loaded == []
        assert not device.opened
    finally:
        pipeline.shutdown()


def test_setup_failure_returns_to_idle(fake_factory: Any, capabilities: PlatformCapabilities) -> None:
    errors: List[BaseException] = []
    pipeline, sink = _pipeline(fake_factory, capabilities, devices=[], on_error=errors.append)
    try:
        with pytest.raises(DeviceNotFound):
            pipeline.start().result(timeout=5)
        assert pipeline.state is PipelineState.IDLE
        assert pipeline.display_context is None
        assert [type(e) for e in errors] == [DeviceNotFound]
    finally:
        pipeline.shutdown()
    assert sink.frames == []


def test_throttle_gates_inference(
    fake_factory: Any,
    capabilities: PlatformCapabilities,
    wait_until: Callable[..., bool],
) -> None:
    pipeline, _ = _pipeline(fake_factory, capabilities, throttle=FrameThrottle(3))
    with pipeline:
        pipeline.start().result(timeout=5)
        assert wait_until(lambda: pipeline.stats.rendered >= 3)
    stats = pipeline.stats
    assert fake_factory.backend.calls == stats.received // 3
    assert stats.rendered + stats.discarded == fake_factory.backend.calls
    assert stats.throttled == stats.received - fake_factory.backend.calls


def test_inference_failures_skip_frames(
    backend_cls: type,
    factory_cls: type,
    capabilities: PlatformCapabilities,
    wait_until: Callable[..., bool],
) -> None:
    factory = factory_cls(backend_cls(fail_on=lambda call: call % 2 == 1))
    pipeline, sink = _pipeline(factory, capabilities)
    with pipeline:
        pipeline.start().result(timeout=5)
        assert wait_until(lambda: pipeline.stats.rendered >= 3 and pipeline.stats.failed >= 3)
        assert pipeline.state is PipelineState.RUNNING
    assert all(len(frame.boxes) == 1 for frame in sink.frames)


def test_stop_discards_in_flight_result(
    backend_cls: type,
    factory_cls: type,
    capabilities: PlatformCapabilities,
) -> None:
    class BlockingBackend(backend_cls):  # type: ignore[misc, valid-type]
        def __init__(self) -> None:
            super().__init__()
            self.entered = threading.Event()
            self.release = threading.Event()

        def predict(self, image: Any) -> Any:
            self.entered.set()
            self.release.wait(5)
            return super().predict(image)

    backend = BlockingBackend()
    pipeline, sink = _pipeline(factory_cls(backend), capabilities)
    try:
        pipeline.start().result(timeout=5)
        assert backend.entered.wait(5)
        stopped = pipeline.stop()
        assert pipeline.state is PipelineState.STOPPED
        backend.release.set()
        stopped.result(timeout=5)
    finally:
        pipeline.shutdown()
    assert sink.frames == []
    assert pipeline.stats.discarded == 1


def test_update_layout_recomputes_context(
    fake_factory: Any,
    capabilities: PlatformCapabilities,
    wait_until: Callable[..., bool],
) -> None:
    pipeline, sink = _pipeline(fake_factory, capabilities)
    with pipeline:
        pipeline.start().result(timeout=5)
        ctx = pipeline.display_context
        assert ctx is not None
        # No layout given: the portrait-rotated sensor frame.
        assert ctx.capture_resolution == (64, 48)
        assert ctx.preview_size == (48, 64)

        updated = pipeline.update_layout(preview_size=(200, 400))
        assert updated is not None and updated.preview_size == (200, 400)
        assert wait_until(lambda: any(f.context.preview_size == (200, 400) for f in sink.frames))


def test_preview_hook_sees_frames(
    fake_factory: Any,
    capabilities: PlatformCapabilities,
    wait_until: Callable[..., bool],
) -> None:
    previews: List[PixelBuffer] = []
    pipeline, _ = _pipeline(fake_factory, capabilities, preview=previews.append, throttle=FrameThrottle(5))
    with pipeline:
        pipeline.start().result(timeout=5)
        assert wait_until(lambda: len(previews) >= 5)
    assert len(previews) == pipeline.stats.received
    assert all(isinstance(p.data, np.ndarray) for p in previews)


def test_segmentation_variant_runs_end_to_end(
    backend_cls: type,
    factory_cls: type,
    capabilities: PlatformCapabilities,
    wait_until: Callable[..., bool],
) -> None:
    factory = factory_cls(backend_cls(masks=np.ones((1, 8, 8), dtype=np.float32)))
    pipeline, sink = _pipeline(factory, capabilities, variant=ModelVariant.of("seg", "n"), preview_size=(390, 844))
    with pipeline:
        pipeline.start().result(timeout=10)
        assert wait_until(lambda: len(sink.frames) >= 1, timeout=10)

    assert factory.loaded == [SupportedVariant.SEGMENT_NANO]
    overlay = sink.frames[0]
    assert overlay.variant is SupportedVariant.SEGMENT_NANO
    (box,) = overlay.boxes
    assert box.label == "person"
    assert overlay.position == (195.0, 422.0)


def test_segmentation_refused_when_platform_lacks_it(fake_factory: Any) -> None:
    device = SyntheticCaptureDevice(formats=SMALL)
    pipeline, sink = _pipeline(
        fake_factory,
        PlatformCapabilities(segmentation=False),
        variant=SupportedVariant.SEGMENT_SMALL,
        devices=[device],
    )
    try:
        with pytest.raises(UnsupportedConfiguration):
            pipeline.start()
        assert pipeline.state is PipelineState.IDLE
        assert fake_factory.loaded == []
        assert not device.opened
    finally:
        pipeline.shutdown()
    assert sink.frames == []


class _FormatlessSource(FrameSource):
    def _setup(self) -> None:
        return None


def test_session_without_format_is_a_setup_error(fake_factory: Any, capabilities: PlatformCapabilities) -> None:
    source = _FormatlessSource(SyntheticDeviceProvider([SyntheticCaptureDevice(formats=SMALL)]))
    pipeline = DetectionPipeline(
        source,
        ModelDispatcher(fake_factory, capabilities=capabilities),
        SupportedVariant.DETECT_NANO,
        CollectingSink(),
    )
    try:
        with pytest.raises(SetupError, match="capture format"):
            pipeline.start().result(timeout=5)
        assert pipeline.state is PipelineState.IDLE
        assert pipeline.display_context is None
    finally:
        pipeline.shutdown()
