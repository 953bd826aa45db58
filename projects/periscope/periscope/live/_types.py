from __future__ import annotations

"""
periscope.live._types

Centralized type aliases for live mode so pyright/mypy have precise array
shapes without evaluating numpy.typing at runtime.
"""

from typing import TYPE_CHECKING, Any, Dict, Mapping, Tuple

if TYPE_CHECKING:
    import numpy as np
    import numpy.typing as npt

    NDArrayU8 = npt.NDArray[np.uint8]
    NDArrayF32 = npt.NDArray[np.float32]
else:
    NDArrayU8 = Any   # type: ignore[misc,assignment]
    NDArrayF32 = Any  # type: ignore[misc,assignment]

Names = Mapping[int, str]
MutableNames = Dict[int, str]
Size = Tuple[float, float]
NormalizedBox = Tuple[float, float, float, float]
