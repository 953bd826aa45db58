"""
Periscope progress UX.

One spinner style: the Halo single-line spinner in `progress_ux.py`. When the
terminal cannot render it (non-TTY, CI, nested spinner) callers get a no-op
spinner so workloads never break.

Environment knobs:
  PERISCOPE_PROGRESS_ACTIVE   internal: set to "1" while a spinner is alive
"""

from __future__ import annotations

from .progress_ux import (
    NullSpinner,
    Spinner,
    should_enable_spinners,
    simple_status,
    status_line,
)

__all__ = [
    "NullSpinner",
    "Spinner",
    "should_enable_spinners",
    "simple_status",
    "status_line",
]
