# \projects\periscope\periscope\__init__.py
"""
Lightweight package init.

Avoid importing heavy deps (Ultralytics, Torch, OpenCV) at import time.
The CLI and the live pipeline import what they need locally.

Exports:
    __version__ : best-effort package version (falls back to "0+unknown")
    ROOT        : project root (./projects/periscope)
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path

__all__ = ["__version__", "ROOT"]


def _detect_version() -> str:
    for dist in ("Periscope", "periscope"):
        try:
            return _pkg_version(dist)
        except PackageNotFoundError:
            continue
    return "0+unknown"


ROOT = Path(__file__).resolve().parents[1]

__version__ = _detect_version()
