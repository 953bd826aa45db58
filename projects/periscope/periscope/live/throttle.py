"""Every-Nth-frame gate in front of inference."""

from __future__ import annotations


class FrameThrottle:
    """
    Counts calls and answers True on every ``interval``-th one.

    Not reentrant: only the pipeline worker calls ``should_process``.
    """

    def __init__(self, interval: int = 1) -> None:
        if interval < 1:
            raise ValueError("throttle interval must be >= 1")
        self.interval = int(interval)
        self._count = 0

    def should_process(self) -> bool:
        self._count += 1
        if self._count >= self.interval:
            self._count = 0
            return True
        return False

    def reset(self) -> None:
        self._count = 0
