# periscope.live.cli: live camera entrypoint ("periscope run d n --camera 0")
from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

import typer

from periscope.logging_config import get_log_path, setup_logging
from periscope.progress import status_line

from ._types import NDArrayU8
from .camera import (
    CaptureDeviceProvider,
    FrameSource,
    OpenCVCaptureDevice,
    OpenCVDeviceProvider,
    PixelBuffer,
    SyntheticCaptureDevice,
    SyntheticDeviceProvider,
)
from .channels import LatestSlot
from .config import LiveSettings, parse_size
from .dispatcher import BackendFactory, ModelDispatcher, ultralytics_backend_factory
from .errors import SetupError
from .formats import PixelEncoding, select_capture_format
from .geometry import DeviceOrientation
from .pipeline import DetectionPipeline, OverlayFrame, OverlaySink
from .sinks import ChannelSink, DisplaySink, compose
from .throttle import FrameThrottle
from .variants import Task, Weight

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

app = typer.Typer(add_completion=False, rich_markup_mode="rich", help="Real-time YOLO detection/segmentation overlays.")

_COMMANDS = {"run", "devices", "formats"}
_QUIT_KEYS = {27, ord("q")}


def _log_event(event: str, **info: object) -> None:
    detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
    LOGGER.info("%s %s", event, detail)


def resolve_settings(
    *,
    task: Optional[str] = None,
    weight: Optional[str] = None,
    camera: Optional[str] = None,
    every: Optional[int] = None,
    encoding: Optional[str] = None,
    preview: Optional[str] = None,
    orientation: Optional[str] = None,
    weights_dir: Optional[Path] = None,
    device: Optional[str] = None,
) -> LiveSettings:
    """Environment defaults overridden by whatever was given on the command line."""
    try:
        settings = LiveSettings.from_env()
        return settings.override(
            task=Task.parse(task) if task is not None else None,
            weight=Weight.parse(weight) if weight is not None else None,
            camera=(int(camera) if camera.isdigit() else camera.lower()) if camera is not None else None,
            throttle_interval=every,
            required_encoding=PixelEncoding.parse(encoding) if encoding is not None else None,
            preview_size=parse_size(preview) if preview is not None else None,
            orientation=DeviceOrientation.parse(orientation) if orientation is not None else None,
            weights_dir=weights_dir,
            device=device,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _provider_for(settings: LiveSettings) -> CaptureDeviceProvider:
    if settings.synthetic:
        return SyntheticDeviceProvider([SyntheticCaptureDevice()])
    if isinstance(settings.camera, int):
        return OpenCVDeviceProvider([settings.camera])
    raise typer.BadParameter(f"--camera must be an index or 'synthetic', got {settings.camera!r}")


def _backend_factory(settings: LiveSettings) -> BackendFactory:
    return ultralytics_backend_factory(settings.weights_dir, settings.device)


def build_pipeline(
    settings: LiveSettings,
    sink: OverlaySink,
    *,
    preview: Optional[Callable[[PixelBuffer], None]] = None,
) -> DetectionPipeline:
    source = FrameSource(_provider_for(settings), required_encoding=settings.required_encoding)
    dispatcher = ModelDispatcher(_backend_factory(settings))
    return DetectionPipeline(
        source,
        dispatcher,
        settings.variant,
        sink,
        throttle=FrameThrottle(settings.throttle_interval),
        preview_size=settings.preview_size,
        orientation=settings.orientation,
        preview=preview,
    )


@app.command()
def run(
    task: Optional[str] = typer.Argument(None, help="Task: d|detect or s|seg|segment (default detect)."),
    weight: Optional[str] = typer.Argument(None, help="Weight: n|s (m|l|x are refused)."),
    camera: Optional[str] = typer.Option(None, "--camera", "-c", help="Camera index or 'synthetic'."),
    every: Optional[int] = typer.Option(None, "--every", min=1, help="Run inference on every Nth frame."),
    encoding: Optional[str] = typer.Option(None, "--encoding", help="Required capture encoding (NV12, YUYV, MJPG)."),
    preview: Optional[str] = typer.Option(None, "--preview", help="Preview size WxH (default 390x844)."),
    orientation: Optional[str] = typer.Option(None, "--orientation", help="Device orientation (portrait)."),
    weights_dir: Optional[Path] = typer.Option(None, "--weights-dir", help="Directory holding yolov8*.pt weights."),
    device: Optional[str] = typer.Option(None, "--device", help="Torch device, e.g. cpu or cuda:0."),
    duration: Optional[float] = typer.Option(None, "--duration", help="Seconds to run; default until quit."),
    headless: bool = typer.Option(False, "--headless", help="Disable the preview window."),
) -> None:
    """Open the camera and paint detections/segments over the live preview."""
    setup_logging()
    settings = resolve_settings(
        task=task,
        weight=weight,
        camera=camera,
        every=every,
        encoding=encoding,
        preview=preview,
        orientation=orientation,
        weights_dir=weights_dir,
        device=device,
    )
    _log_event("live.cli.run", variant=settings.variant, camera=settings.camera, every=settings.throttle_interval)

    overlays = ChannelSink()
    frames: LatestSlot[NDArrayU8] = LatestSlot()
    pipeline = build_pipeline(
        settings,
        overlays,
        preview=None if headless else (lambda buf: frames.put(buf.data.copy())),
    )
    try:
        pipeline.start().result()
    except SetupError as exc:
        pipeline.shutdown()
        typer.secho(f"Setup failed: {exc}", fg=typer.colors.RED, err=True)
        log_path = get_log_path()
        if log_path is not None:
            typer.echo(f"Log: {log_path}", err=True)
        raise typer.Exit(code=1)

    display = DisplaySink(title=f"Periscope {settings.variant}", headless=headless)
    deadline = time.monotonic() + duration if duration is not None else None
    last_frame: Optional[NDArrayU8] = None
    last_overlay: Optional[OverlayFrame] = None
    try:
        while deadline is None or time.monotonic() < deadline:
            overlay = overlays.latest(timeout=0.02 if headless else None)
            if overlay is not None:
                last_overlay = overlay
            if headless:
                continue
            frame = frames.wait(0.02)
            if frame is not None:
                last_frame = frame
            context = pipeline.display_context
            if context is None:
                continue
            status = [f"{settings.variant} every={settings.throttle_interval}", f"boxes={len(last_overlay.boxes) if last_overlay else 0}"]
            display.show(compose(last_frame, last_overlay, context, status=status))
            if display.poll_key() in _QUIT_KEYS or not display.is_open():
                break
    except KeyboardInterrupt:
        pass
    finally:
        pipeline.shutdown()
        display.close()

    stats = pipeline.stats
    typer.echo(status_line("variant", settings.variant))
    typer.echo(status_line("frames", f"received={stats.received} throttled={stats.throttled} rendered={stats.rendered}"))
    typer.echo(status_line("dropped", f"late={pipeline.dropped_late} failed={stats.failed}", ok=stats.failed == 0))


@app.command()
def devices(max_index: int = typer.Option(4, "--max-index", min=1, help="Probe camera indexes below this.")) -> None:
    """List cameras OpenCV can open."""
    setup_logging()
    found = OpenCVDeviceProvider(max_index=max_index).devices()
    if not found:
        typer.secho("No cameras detected.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    for dev in found:
        typer.echo(status_line(dev.name, dev.position.value))


@app.command()
def formats(
    camera: str = typer.Argument("0", help="Camera index or 'synthetic'."),
    encoding: str = typer.Option("NV12", "--encoding", help="Encoding the selector must match."),
) -> None:
    """List a camera's capture formats and mark the one a session would use."""
    setup_logging()
    try:
        required = PixelEncoding.parse(encoding)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if camera.lower() == "synthetic":
        available = SyntheticCaptureDevice().formats()
    elif camera.isdigit():
        available = OpenCVCaptureDevice(int(camera)).formats()
    else:
        raise typer.BadParameter(f"camera must be an index or 'synthetic', got {camera!r}")
    chosen = select_capture_format(available, required)
    for fmt in available:
        marker = "*" if fmt == chosen else " "
        typer.echo(f"{marker} {fmt}")
    if chosen is None:
        typer.secho(f"No {required.value} format available.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def _prepend_argv(token: str, argv: List[str]) -> List[str]:
    """Put ``token`` in front unless the first argument already names a command."""
    if argv and argv[0] in _COMMANDS:
        return argv
    return [token] + argv


def main() -> None:  # pragma: no cover
    # "periscope seg s --camera 0" works without spelling out "run".
    argv = sys.argv[1:]
    if argv and not any(a in {"-h", "--help"} for a in argv):
        sys.argv = sys.argv[:1] + _prepend_argv("run", argv)
    try:
        app()
    except KeyboardInterrupt:
        raise SystemExit(0)


if __name__ == "__main__":  # pragma: no cover
    main()
