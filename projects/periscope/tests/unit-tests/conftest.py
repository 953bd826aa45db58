# projects/periscope/tests/unit-tests/conftest.py
from __future__ import annotations

import os
import sys
import time
import types
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import numpy as np
import pytest
from pytest import MonkeyPatch

from periscope.live.config import PlatformCapabilities
from periscope.live.variants import SupportedVariant


@pytest.fixture(scope="session", autouse=True)
def _periscope_env(tmp_path_factory: pytest.TempPathFactory) -> Iterator[None]:
    """
    Keep spinners quiet and send logs to a throwaway file so runs never write
    into the user's data directory.
    """
    log_dir = tmp_path_factory.mktemp("logs")
    saved = {k: os.environ.get(k) for k in ("CI", "PERISCOPE_LOG_FILE", "PERISCOPE_LOG_LEVEL")}
    os.environ["CI"] = "1"
    os.environ["PERISCOPE_LOG_FILE"] = str(log_dir / "periscope.log")
    os.environ.setdefault("PERISCOPE_LOG_LEVEL", "INFO")
    yield
    for key, value in saved.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture(autouse=True)
def _clear_live_overrides(monkeypatch: MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("PERISCOPE_LIVE_"):
            monkeypatch.delenv(key, raising=False)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeBackend:
    """Backend returning an Ultralytics-shaped result with fixed rows."""

    def __init__(
        self,
        rows: Sequence[Sequence[float]] = ((0.25, 0.25, 0.75, 0.75, 0.9, 0.0),),
        *,
        names: Optional[Dict[int, str]] = None,
        masks: Optional[np.ndarray] = None,
        fail_on: Callable[[int], bool] = lambda _call: False,
    ) -> None:
        self.rows = np.asarray(rows, dtype=np.float32).reshape(-1, 6)
        self.names: Dict[int, str] = names if names is not None else {0: "person"}
        self.masks = masks
        self.fail_on = fail_on
        self.calls = 0
        self.images: List[Any] = []

    def predict(self, image: Any) -> Any:
        self.calls += 1
        self.images.append(image)
        if self.fail_on(self.calls):
            raise RuntimeError(f"backend exploded on call {self.calls}")
        boxes = types.SimpleNamespace(
            xyxyn=self.rows[:, :4].copy(),
            conf=self.rows[:, 4].copy(),
            cls=self.rows[:, 5].copy(),
        )
        masks = types.SimpleNamespace(data=self.masks) if self.masks is not None else None
        return types.SimpleNamespace(boxes=boxes, masks=masks, names=dict(self.names))


class RecordingFactory:
    def __init__(self, backend: Optional[FakeBackend] = None) -> None:
        self.backend = backend or FakeBackend()
        self.loaded: List[SupportedVariant] = []

    def __call__(self, variant: SupportedVariant) -> FakeBackend:
        self.loaded.append(variant)
        return self.backend


@pytest.fixture
def fake_factory() -> RecordingFactory:
    return RecordingFactory()


@pytest.fixture
def capabilities() -> PlatformCapabilities:
    return PlatformCapabilities(segmentation=True, arch="x86_64", ultralytics="8.3.0")


@pytest.fixture
def install_dummy_ultralytics(monkeypatch: MonkeyPatch) -> Callable[[type], None]:
    def _install(cls: type) -> None:
        monkeypatch.setitem(sys.modules, "ultralytics", types.SimpleNamespace(YOLO=cls))

    return _install


@pytest.fixture
def install_fake_torch(monkeypatch: MonkeyPatch) -> Callable[[bool], None]:
    def _install(cuda: bool) -> None:
        cuda_ns = types.SimpleNamespace(is_available=lambda: cuda)
        monkeypatch.setitem(sys.modules, "torch", types.SimpleNamespace(cuda=cuda_ns))

    return _install


@pytest.fixture
def backend_cls() -> type:
    return FakeBackend


@pytest.fixture
def factory_cls() -> type:
    return RecordingFactory


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    return wait_for
