"""Minimal logging helpers for Periscope.

* ``setup_logging`` initialises a single file handler on the root logger.
* ``bind_context`` is a lightweight context manager that tags a block of work
  in the log with ``key=value`` pairs.
* ``get_log_path`` exposes the log file in use.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

__all__ = [
    "bind_context",
    "get_log_path",
    "setup_logging",
]

_configured = False
_run_dir: Optional[Path] = None
_log_path: Optional[Path] = None

_NOISY_LOGGERS = (
    "ultralytics",
    "ultralytics.engine.model",
    "ultralytics.utils",
    "ultralytics.nn.autobackend",
)


def _platform_data_dir() -> Path:
    """Return a per-user writable application data directory."""
    app = "periscope"
    if os.name == "nt":
        base = Path(os.getenv("LOCALAPPDATA") or os.getenv("APPDATA") or (Path.home() / "AppData" / "Local"))
        return base / app
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / app
    xdg_home = os.getenv("XDG_DATA_HOME")
    if xdg_home:
        return Path(xdg_home) / app
    return Path.home() / ".local" / "share" / app


def _default_logs_dir() -> Path:
    return _platform_data_dir() / "logs"


def _resolve_log_path(file_env: str) -> Path:
    override = os.getenv(file_env)
    if override:
        path = Path(override).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        return path
    logs_dir = _default_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir / "periscope.log"


def setup_logging(
    *,
    level_env: str = "PERISCOPE_LOG_LEVEL",
    file_env: str = "PERISCOPE_LOG_FILE",
) -> Path:
    """
    Configure the root logger with a single file handler.

    The handler logs WARNING and higher to ``periscope.log`` (or the path in
    ``PERISCOPE_LOG_FILE``); ``PERISCOPE_LOG_LEVEL`` picks another level. The
    function is idempotent: repeated calls return the configured log directory
    without touching the handlers again.
    """
    global _configured, _run_dir, _log_path

    if _configured:
        return _run_dir if _run_dir is not None else _default_logs_dir()

    level_name = os.getenv(level_env, "WARNING").upper().strip()
    level = getattr(logging, level_name, logging.WARNING)
    if not isinstance(level, int):
        level = logging.WARNING

    handler: logging.Handler
    try:
        log_path = _resolve_log_path(file_env)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError:
        log_path = Path(tempfile.gettempdir()) / "periscope.log"
        handler = logging.FileHandler(log_path, encoding="utf-8")
    _log_path = log_path
    _run_dir = log_path.parent

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # Ultralytics prints banners at INFO on every model load.
    for name in _NOISY_LOGGERS:
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.setLevel(logging.ERROR)
        lg.propagate = False

    _configured = True
    return _run_dir


@contextmanager
def bind_context(**context: object) -> Iterator[None]:
    """Log entry/exit of a block of work tagged with ``context``."""
    logger = logging.getLogger("periscope.context")
    detail = " ".join(f"{k}={context[k]}" for k in sorted(context) if context[k] is not None)
    logger.debug("enter %s", detail)
    try:
        yield
    finally:
        logger.debug("exit %s", detail)


def get_log_path() -> Optional[Path]:
    """Expose the resolved log file path for modules that need it."""
    return _log_path
