# progress_ux.py: terminal UX helpers (Halo spinner, colored status lines)
from __future__ import annotations

import os
import sys
from types import TracebackType
from typing import Any, Optional, Protocol, Type

from colorama import Fore, Style
from colorama import init as colorama_init
from halo import Halo

colorama_init(autoreset=True)


class Spinner(Protocol):
    def __enter__(self) -> "Spinner": ...
    def __exit__(self, exc_type: Optional[Type[BaseException]], exc: Optional[BaseException], tb: Optional[TracebackType]) -> None: ...
    def start(self) -> "Spinner": ...
    def stop(self) -> None: ...
    def update(self, **kwargs: Any) -> "Spinner": ...


def should_enable_spinners(stream: Any | None = None) -> bool:
    """Spinners only render on an interactive terminal outside CI."""
    if os.environ.get("PERISCOPE_PROGRESS_ACTIVE") == "1":
        return False
    target = stream or sys.stderr
    isatty = getattr(target, "isatty", None)
    if not callable(isatty) or not isatty():
        return False
    if os.environ.get("CI"):
        return False
    if os.environ.get("TERM") == "dumb":
        return False
    return True


class NullSpinner:
    def __init__(self, *_: Any, **__: Any) -> None:
        pass

    def __enter__(self) -> "NullSpinner":
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]], exc: Optional[BaseException], tb: Optional[TracebackType]) -> None:
        self.stop()

    def start(self) -> "NullSpinner":
        return self

    def stop(self) -> None:
        return None

    def update(self, **_: Any) -> "NullSpinner":
        return self


class HaloSpinner:
    """
    Single-line Halo spinner that marks the PERISCOPE_PROGRESS_ACTIVE flag
    while alive so nested status calls degrade to no-ops.
    """

    def __init__(self, text: str, *, spinner_type: str = "dots", stream: Any | None = None) -> None:
        self._label = text
        self._halo = Halo(text=text, spinner=spinner_type, stream=stream or sys.stderr)
        self._failed = False

    def __enter__(self) -> "HaloSpinner":
        return self.start()

    def __exit__(self, exc_type: Optional[Type[BaseException]], exc: Optional[BaseException], tb: Optional[TracebackType]) -> None:
        self._failed = exc is not None
        self.stop()

    def start(self) -> "HaloSpinner":
        os.environ["PERISCOPE_PROGRESS_ACTIVE"] = "1"
        self._halo.start()
        return self

    def stop(self) -> None:
        if self._failed:
            self._halo.fail(self._label)
        else:
            self._halo.succeed(self._label)
        os.environ.pop("PERISCOPE_PROGRESS_ACTIVE", None)

    def update(self, **kwargs: Any) -> "HaloSpinner":
        text = kwargs.get("text") or kwargs.get("current")
        if text:
            self._halo.text = f"{self._label} [{text}]"
        return self


def simple_status(label: str, *, enabled: bool = True, stream: Any | None = None) -> Spinner:
    """Spinner for one slow step (model load, camera open); no-op when not a TTY."""
    if enabled and should_enable_spinners(stream):
        return HaloSpinner(label, stream=stream)
    return NullSpinner()


def status_line(label: str, value: object, *, ok: bool = True) -> str:
    """Format a colored ``label: value`` line for CLI summaries."""
    color = Fore.GREEN if ok else Fore.RED
    return f"{Style.BRIGHT}{label}{Style.RESET_ALL}: {color}{value}{Style.RESET_ALL}"
