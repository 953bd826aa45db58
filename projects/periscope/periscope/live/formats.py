"""
Capture format descriptors and the format selector.

The selector is deliberately tiny: a camera reports the modes it can run in,
and the session runs in the widest one that uses the required pixel layout.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

LOGGER = logging.getLogger(__name__)


def _log(event: str, **info: object) -> None:
    if info:
        detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info(event)


class PixelEncoding(str, Enum):
    """Pixel layouts identified by their FOURCC code."""

    NV12 = "NV12"  # bi-planar 4:2:0, full range luma
    YUYV = "YUYV"  # packed 4:2:2
    MJPG = "MJPG"
    GREY = "GREY"
    BGR3 = "BGR3"

    @property
    def fourcc(self) -> int:
        code = self.value
        return ord(code[0]) | (ord(code[1]) << 8) | (ord(code[2]) << 16) | (ord(code[3]) << 24)

    @classmethod
    def parse(cls, value: Union[str, "PixelEncoding"]) -> "PixelEncoding":
        if isinstance(value, PixelEncoding):
            return value
        key = str(value).strip().upper()
        aliases = {"420": cls.NV12, "420F": cls.NV12, "YUY2": cls.YUYV, "422": cls.YUYV, "YUV422": cls.YUYV}
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown pixel encoding: {value!r}") from None

    @classmethod
    def from_fourcc(cls, code: Union[int, float]) -> Optional["PixelEncoding"]:
        """Decode an OpenCV ``CAP_PROP_FOURCC`` value; ``None`` when unknown."""
        raw = int(code)
        if raw <= 0:
            return None
        chars = "".join(chr((raw >> (8 * i)) & 0xFF) for i in range(4)).upper()
        try:
            return cls.parse(chars)
        except ValueError:
            return None


#: Layout the sessions are negotiated for unless configured otherwise.
DEFAULT_ENCODING = PixelEncoding.NV12


@dataclass(frozen=True)
class CaptureFormat:
    encoding: PixelEncoding
    width: int
    height: int

    @property
    def resolution(self) -> tuple[int, int]:
        return (self.width, self.height)

    def __str__(self) -> str:
        return f"{self.encoding.value} {self.width}x{self.height}"


def select_capture_format(
    formats: Iterable[CaptureFormat],
    required_encoding: PixelEncoding = DEFAULT_ENCODING,
) -> Optional[CaptureFormat]:
    """
    Pick the widest format using ``required_encoding``.

    Formats with another encoding are ignored. Among equal widths the first
    one seen wins. Returns ``None`` when nothing matches.
    """
    best: Optional[CaptureFormat] = None
    for fmt in formats:
        if fmt.encoding != required_encoding:
            continue
        if best is None or fmt.width > best.width:
            best = fmt
    _log("live.format.select", encoding=required_encoding.value, selected=best)
    return best
