"""
Model variants.

``ModelVariant`` is what a caller asks for: any task x weight pair.
``SupportedVariant`` is the closed set the project can actually run; every
member names its own weight file. Turning the former into the latter is the
only place an unsupported pair is detected.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .errors import UnsupportedConfiguration


class Task(str, Enum):
    DETECTION = "detection"
    SEGMENTATION = "segmentation"

    @classmethod
    def parse(cls, value: Union[str, "Task"]) -> "Task":
        if isinstance(value, Task):
            return value
        key = str(value).strip().lower()
        if key in ("d", "det", "detect", "detection"):
            return cls.DETECTION
        if key in ("s", "seg", "segment", "segmentation"):
            return cls.SEGMENTATION
        raise ValueError(f"Unknown task: {value!r}")


class Weight(str, Enum):
    NANO = "n"
    SMALL = "s"
    MEDIUM = "m"
    LARGE = "l"
    XLARGE = "x"

    @classmethod
    def parse(cls, value: Union[str, "Weight"]) -> "Weight":
        if isinstance(value, Weight):
            return value
        key = str(value).strip().lower()
        for member in cls:
            if key in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unknown weight: {value!r}")


@dataclass(frozen=True)
class ModelVariant:
    task: Task
    weight: Weight

    @classmethod
    def of(cls, task: Union[str, Task], weight: Union[str, Weight]) -> "ModelVariant":
        return cls(Task.parse(task), Weight.parse(weight))

    def resolve(self) -> "SupportedVariant":
        supported = SupportedVariant.lookup(self)
        if supported is None:
            raise UnsupportedConfiguration(self, "no backing model")
        return supported

    def __str__(self) -> str:
        return f"{self.task.value}/{self.weight.name.lower()}"


class SupportedVariant(Enum):
    DETECT_NANO = (Task.DETECTION, Weight.NANO, "yolov8n")
    DETECT_SMALL = (Task.DETECTION, Weight.SMALL, "yolov8s")
    SEGMENT_NANO = (Task.SEGMENTATION, Weight.NANO, "yolov8n-seg")
    SEGMENT_SMALL = (Task.SEGMENTATION, Weight.SMALL, "yolov8s-seg")

    def __init__(self, task: Task, weight: Weight, stem: str) -> None:
        self.task = task
        self.weight = weight
        self.stem = stem

    @property
    def variant(self) -> ModelVariant:
        return ModelVariant(self.task, self.weight)

    @property
    def is_segmentation(self) -> bool:
        return self.task is Task.SEGMENTATION

    @property
    def ultralytics_task(self) -> str:
        return "segment" if self.is_segmentation else "detect"

    @classmethod
    def lookup(cls, variant: ModelVariant) -> Optional["SupportedVariant"]:
        for member in cls:
            if member.task is variant.task and member.weight is variant.weight:
                return member
        return None

    def __str__(self) -> str:
        return str(self.variant)


AnyVariant = Union[ModelVariant, SupportedVariant]
