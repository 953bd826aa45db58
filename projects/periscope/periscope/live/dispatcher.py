"""
Model dispatcher: routes a frame to the backend of one supported variant and
normalizes whatever it returns into ``InferenceResult``.

Result layout:
  primary_tensor    float32 (N, 6): x0, y0, x1, y1 (normalized), confidence, class id
  auxiliary_tensor  float32 (N, H, W) instance masks; segmentation only, None otherwise
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, cast

import numpy as np

from periscope.progress import simple_status

from ._types import MutableNames, NDArrayF32, NDArrayU8, Names, NormalizedBox
from .camera import PixelBuffer
from .config import PlatformCapabilities, probe_capabilities, probe_device
from .errors import BackendLoadFailed, InferenceFailed, SetupError, UnsupportedConfiguration
from .variants import AnyVariant, ModelVariant, SupportedVariant

LOGGER = logging.getLogger(__name__)

# Backend-intrinsic thresholds; part of each model's contract.
IOU_THRESHOLD = 0.45
CONFIDENCE_THRESHOLD = 0.25


def _log(event: str, **info: object) -> None:
    detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
    LOGGER.info("%s %s", event, detail)


class InferenceBackend(Protocol):
    names: Names

    def predict(self, image: NDArrayU8) -> Any: ...


BackendFactory = Callable[[SupportedVariant], InferenceBackend]


def _names_from_model(model: Any) -> MutableNames:
    names: MutableNames = {}
    raw = getattr(model, "names", None)
    if isinstance(raw, dict):
        for k, v in raw.items():
            try:
                names[int(k)] = str(v)
            except (TypeError, ValueError):
                continue
    elif isinstance(raw, (list, tuple)):
        names = {i: str(v) for i, v in enumerate(raw)}
    return names


def _to_numpy(x: Any, dtype: Any = np.float32) -> np.ndarray:
    """Detach/copy a tensor-like to a fresh numpy array."""
    if x is None:
        return np.zeros((0,), dtype=dtype)
    if hasattr(x, "detach"):
        x = x.detach()
    if hasattr(x, "cpu"):
        x = x.cpu()
    if hasattr(x, "numpy"):
        x = x.numpy()
    return np.array(x, dtype=dtype)


class UltralyticsBackend:
    """A loaded ``ultralytics.YOLO`` model run with fixed thresholds."""

    def __init__(self, model: Any, *, device: Optional[str] = None) -> None:
        self._model = model
        self._device = device
        self.names: Names = _names_from_model(model)

    def predict(self, image: NDArrayU8) -> Any:
        kwargs: Dict[str, Any] = {"conf": CONFIDENCE_THRESHOLD, "iou": IOU_THRESHOLD, "verbose": False}
        if self._device:
            kwargs["device"] = self._device
        results = self._model.predict(image, **kwargs)
        return results[0] if results else None


def ultralytics_backend_factory(weights_dir: Optional[Path] = None, device: Optional[str] = None) -> BackendFactory:
    """Factory for ``ModelDispatcher``; with no ``device`` the torch probe picks one at load time."""

    def _factory(variant: SupportedVariant) -> InferenceBackend:
        from periscope.model_registry import load_model

        target = device or probe_device()
        _log("live.model.device", variant=variant, device=target)
        return UltralyticsBackend(load_model(variant, weights_dir), device=target)

    return _factory


@dataclass(frozen=True)
class InferenceResult:
    variant: SupportedVariant
    primary_tensor: NDArrayF32 = field(repr=False)
    auxiliary_tensor: Optional[NDArrayF32] = field(default=None, repr=False)
    names: Names = field(default_factory=dict, repr=False)
    frame_index: Optional[int] = None

    def __post_init__(self) -> None:
        if self.variant.is_segmentation != (self.auxiliary_tensor is not None):
            raise ValueError("auxiliary_tensor is present exactly for segmentation variants")
        self.primary_tensor.setflags(write=False)
        if self.auxiliary_tensor is not None:
            self.auxiliary_tensor.setflags(write=False)

    def __len__(self) -> int:
        return int(self.primary_tensor.shape[0])


@dataclass(frozen=True)
class Detection:
    normalized_box: NormalizedBox
    label: str
    confidence: float
    class_id: int = -1


def _normalize_boxes(raw: Any) -> NDArrayF32:
    boxes = getattr(raw, "boxes", None)
    if boxes is None:
        return np.zeros((0, 6), dtype=np.float32)
    xyxyn = _to_numpy(getattr(boxes, "xyxyn", None)).reshape(-1, 4)
    conf = _to_numpy(getattr(boxes, "conf", None)).reshape(-1)
    cls = _to_numpy(getattr(boxes, "cls", None)).reshape(-1)
    n = min(len(xyxyn), len(conf), len(cls))
    return np.column_stack([xyxyn[:n], conf[:n], cls[:n]]).astype(np.float32, copy=False)


def _normalize_masks(raw: Any) -> NDArrayF32:
    data = getattr(getattr(raw, "masks", None), "data", None)
    if data is None:
        return np.zeros((0, 0, 0), dtype=np.float32)
    masks = _to_numpy(data)
    if masks.ndim == 2:
        masks = masks[None, :, :]
    return masks


def normalize_output(variant: SupportedVariant, raw: Any, names: Names, frame_index: Optional[int] = None) -> InferenceResult:
    """Uniform result shape for any backend output."""
    if raw is None:
        primary = np.zeros((0, 6), dtype=np.float32)
        auxiliary = np.zeros((0, 0, 0), dtype=np.float32) if variant.is_segmentation else None
    else:
        primary = _normalize_boxes(raw)
        auxiliary = _normalize_masks(raw) if variant.is_segmentation else None
        raw_names = _names_from_model(raw)
        if raw_names:
            names = raw_names
    return InferenceResult(variant, primary, auxiliary, dict(names), frame_index)


def decode_detections(result: InferenceResult) -> List[Detection]:
    """Rows of ``primary_tensor`` as labeled, clipped detections."""
    out: List[Detection] = []
    for row in result.primary_tensor:
        x0, y0, x1, y1 = (float(np.clip(v, 0.0, 1.0)) for v in row[:4])
        class_id = int(row[5])
        out.append(
            Detection(
                normalized_box=(x0, y0, x1, y1),
                label=result.names.get(class_id, str(class_id)),
                confidence=float(np.clip(row[4], 0.0, 1.0)),
                class_id=class_id,
            )
        )
    return out


class ModelDispatcher:
    """
    Holds one lazily loaded backend per supported variant, kept for the
    process lifetime. Loading and predicting happen on the pipeline worker,
    so the backend table needs no lock.
    """

    def __init__(
        self,
        factory: Optional[BackendFactory] = None,
        *,
        capabilities: Optional[PlatformCapabilities] = None,
    ) -> None:
        self._factory = factory or ultralytics_backend_factory()
        self._capabilities = capabilities
        self._backends: Dict[SupportedVariant, InferenceBackend] = {}

    @property
    def capabilities(self) -> PlatformCapabilities:
        if self._capabilities is None:
            self._capabilities = probe_capabilities()
        return self._capabilities

    def supported(self, variant: AnyVariant) -> SupportedVariant:
        """Resolve ``variant`` or raise ``UnsupportedConfiguration``; touches no backend."""
        key = variant if isinstance(variant, SupportedVariant) else cast(ModelVariant, variant).resolve()
        if key.is_segmentation and not self.capabilities.segmentation:
            raise UnsupportedConfiguration(key.variant, "segmentation not available on this platform")
        return key

    def is_loaded(self, variant: AnyVariant) -> bool:
        key = variant if isinstance(variant, SupportedVariant) else SupportedVariant.lookup(cast(ModelVariant, variant))
        return key in self._backends

    def load(self, variant: AnyVariant) -> SupportedVariant:
        key = self.supported(variant)
        if key in self._backends:
            return key
        with simple_status(f"Loading {key.stem}"):
            try:
                backend = self._factory(key)
            except SetupError:
                raise
            except Exception as exc:
                raise BackendLoadFailed(f"Failed to load backend for {key}: {exc}") from exc
        self._backends[key] = backend
        _log("live.model.loaded", variant=key, classes=len(backend.names))
        return key

    def predict(self, variant: AnyVariant, buffer: PixelBuffer) -> InferenceResult:
        key = self.supported(variant)
        backend = self._backends.get(key)
        if backend is None:
            self.load(key)
            backend = self._backends[key]
        try:
            raw = backend.predict(buffer.data)
            return normalize_output(key, raw, backend.names, buffer.index)
        except Exception as exc:
            raise InferenceFailed(key, buffer.index) from exc
