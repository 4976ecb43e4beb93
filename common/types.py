from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple, Union
import math

from common.geometry import normalize_heading


IsoTime = str


def _require_finite(**values: float) -> None:
    for name, v in values.items():
        if not math.isfinite(float(v)):
            raise ValueError(f"{name} must be finite, got {v!r}")


class ResolutionHint(str, Enum):
    """
    Advisory detection setting for the tag localizer.

    HIGH_ACCURACY trades frame rate for range (AprilTag decimation 1),
    BALANCED is the default rate/range trade-off (decimation 3).
    """
    HIGH_ACCURACY = "high_accuracy"
    BALANCED = "balanced"


@dataclass(frozen=True, slots=True)
class VisionFix:
    """
    One absolute robot pose reported by the tag localizer for the current frame.

    Attributes:
        x, y: field position (cm).
        heading: field heading (deg), any range; normalized by the estimator.
        tag_id: id of the tag the fix was derived from, if known.
    """
    x: float
    y: float
    heading: float
    tag_id: Optional[int] = None

    def __post_init__(self) -> None:
        _require_finite(x=self.x, y=self.y, heading=self.heading)


VisionFixBatch = Tuple[VisionFix, ...]


@dataclass(frozen=True, slots=True)
class FusedPose:
    """
    Published fused pose. Immutable: the estimator publishes a new snapshot per cycle.

    Attributes:
        x, y: field position (cm), last vision average.
        heading: degrees in (-180, 180].
        seq: estimator cycle number that produced this snapshot (0 = initial).
        cycles_since_fix: cycles since the last non-empty vision batch.
        has_fix: False until the first vision fix ever arrives.
        ts: ISO-8601 (UTC) publication time.
    """
    x: float = 0.0
    y: float = 0.0
    heading: float = 0.0
    seq: int = 0
    cycles_since_fix: int = 0
    has_fix: bool = False
    ts: IsoTime = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Unlocked:
    """Yaw lock not acquired yet; heading is the raw gyro heading."""

    @property
    def acquired(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Locked:
    """
    Yaw lock acquired on the first vision fix.

    Attributes:
        offset: normalize(vision_heading_at_first_fix - raw_heading_at_first_fix).
        raw_heading_at_first_fix: normalized gyro heading read on the lock cycle.
        vision_heading_at_first_fix: mean vision heading of the lock cycle.
    """
    offset: float
    raw_heading_at_first_fix: float
    vision_heading_at_first_fix: float

    @property
    def acquired(self) -> bool:
        return True


YawLock = Union[Unlocked, Locked]


def lock_to_dict(lock: YawLock) -> Dict[str, Any]:
    if isinstance(lock, Locked):
        return {
            "acquired": True,
            "offset": lock.offset,
            "raw_heading_at_first_fix": lock.raw_heading_at_first_fix,
            "vision_heading_at_first_fix": lock.vision_heading_at_first_fix,
        }
    return {"acquired": False, "offset": None, "raw_heading_at_first_fix": None,
            "vision_heading_at_first_fix": None}


@dataclass(frozen=True, slots=True)
class PositionStale:
    """Position has not been refreshed by vision for `cycles_since_fix` cycles."""
    cycles_since_fix: int
    never_fixed: bool = False


@dataclass(slots=True)
class NavigationTarget:
    """
    Commanded destination for NavigationController.navigate_to.

    Attributes:
        x, y: field position (cm).
        heading: final heading (deg); normalized on construction.
        position_tolerance: approach phase ends at or below this distance (cm).
        heading_tolerance: final phase ends at or below this absolute error (deg).
    """
    x: float
    y: float
    heading: float
    position_tolerance: float = 1.0
    heading_tolerance: float = 1.0

    def __post_init__(self) -> None:
        _require_finite(x=self.x, y=self.y)
        self.x = float(self.x)
        self.y = float(self.y)
        self.heading = normalize_heading(self.heading)
        if not self.position_tolerance > 0:
            raise ValueError("position_tolerance must be > 0")
        if not self.heading_tolerance > 0:
            raise ValueError("heading_tolerance must be > 0")


@dataclass(frozen=True, slots=True)
class DriveCommand:
    """
    Normalized axis command for the actuation sink.

    forward: + ahead; strafe: + to the robot's left; turn: + counter-clockwise.
    """
    forward: float = 0.0
    strafe: float = 0.0
    turn: float = 0.0

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.forward, self.strafe, self.turn)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


STOP = DriveCommand(0.0, 0.0, 0.0)


# -------------------------
# Collaborator contracts
# -------------------------
class VisionDetector(Protocol):
    def get_fixes(self) -> Sequence[VisionFix]: ...

    def set_resolution_hint(self, level: ResolutionHint) -> None: ...

    def close(self) -> None: ...


class Gyroscope(Protocol):
    def get_heading_deg(self) -> float: ...


class ActuationSink(Protocol):
    def send(self, command: DriveCommand) -> None: ...


class PoseSource(Protocol):
    @property
    def pose(self) -> FusedPose: ...
