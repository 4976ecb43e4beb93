from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from common.geometry import distance, normalize_heading
from common.logging_setup import get_logger
from common.types import DriveCommand, ResolutionHint, VisionFix


log = get_logger("sensors.sim")


@dataclass
class SimulatedRobot:
    """
    Holonomic planar robot driven by normalized DriveCommands.

    Each `send` integrates one control period `dt_s`:
      forward/strafe scale `max_speed_cm_s` (strafe + is robot-left),
      turn scales `max_turn_dps` (CCW +).
    Acts as the actuation sink in simulation.
    """
    x: float = 0.0
    y: float = 0.0
    heading: float = 0.0
    dt_s: float = 0.02
    max_speed_cm_s: float = 50.0
    max_turn_dps: float = 180.0
    t: float = 0.0
    commands: int = 0
    last_command: DriveCommand = field(default_factory=DriveCommand)

    def __post_init__(self) -> None:
        if self.dt_s <= 0:
            raise ValueError("dt_s must be > 0")
        self.heading = normalize_heading(self.heading)

    def send(self, command: DriveCommand) -> None:
        f, s, w = command.as_tuple()
        th = math.radians(self.heading)
        step = self.max_speed_cm_s * self.dt_s
        self.x += (f * math.cos(th) - s * math.sin(th)) * step
        self.y += (f * math.sin(th) + s * math.cos(th)) * step
        self.heading = normalize_heading(self.heading + w * self.max_turn_dps * self.dt_s)
        self.t += self.dt_s
        self.commands += 1
        self.last_command = command

    @property
    def true_pose(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.heading)


@dataclass
class SimulatedGyro:
    """
    Heading source with the usual gyro error terms:
      reading = true heading + bias_deg + drift_dps * t + N(0, noise_deg)
    Always returns a value.
    """
    robot: SimulatedRobot
    bias_deg: float = 0.0
    drift_dps: float = 0.0
    noise_deg: float = 0.0
    seed: int = 1234
    _rng: np.random.Generator = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._rng = np.random.default_rng(self.seed)

    def get_heading_deg(self) -> float:
        noise = float(self._rng.normal(0.0, self.noise_deg)) if self.noise_deg > 0 else 0.0
        return self.robot.heading + self.bias_deg + self.drift_dps * self.robot.t + noise


@dataclass
class SimulatedTagLocalizer:
    """
    Stand-in for the AprilTag localizer: one fix per field tag within range.

    Args:
        robot: world truth
        tags: {tag_id: (x_cm, y_cm)} positions on the field
        range_cm: detection range with BALANCED decimation
        high_accuracy_range_scale: range multiplier for HIGH_ACCURACY
            (decimation 1 sees a 2" tag at ~10 ft vs ~4 ft at decimation 3)
        noise_cm / heading_noise_deg: gaussian noise on each fix
        dropout: probability that a whole frame returns no detections
    """
    robot: SimulatedRobot
    tags: Dict[int, Tuple[float, float]] = field(default_factory=lambda: {0: (0.0, 0.0)})
    range_cm: float = 150.0
    high_accuracy_range_scale: float = 2.5
    noise_cm: float = 0.0
    heading_noise_deg: float = 0.0
    dropout: float = 0.0
    seed: int = 1234
    hint: ResolutionHint = ResolutionHint.BALANCED
    closed: bool = False
    frames: int = 0
    _rng: np.random.Generator = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._rng = np.random.default_rng(self.seed)

    @property
    def effective_range_cm(self) -> float:
        if self.hint == ResolutionHint.HIGH_ACCURACY:
            return self.range_cm * self.high_accuracy_range_scale
        return self.range_cm

    def set_resolution_hint(self, level: ResolutionHint) -> None:
        if level != self.hint:
            log.debug("resolution hint changed", extra={"extra": {"hint": ResolutionHint(level).value}})
        self.hint = ResolutionHint(level)

    def get_fixes(self) -> Sequence[VisionFix]:
        if self.closed:
            raise RuntimeError("tag localizer already closed")
        self.frames += 1
        if self.dropout > 0 and self._rng.random() < self.dropout:
            return []
        x, y, h = self.robot.true_pose
        fixes: List[VisionFix] = []
        for tag_id, (tx, ty) in sorted(self.tags.items()):
            if distance(x, y, tx, ty) > self.effective_range_cm:
                continue
            fixes.append(VisionFix(
                x=x + self._noise(self.noise_cm),
                y=y + self._noise(self.noise_cm),
                heading=normalize_heading(h + self._noise(self.heading_noise_deg)),
                tag_id=int(tag_id),
            ))
        return fixes

    def close(self) -> None:
        self.closed = True

    def _noise(self, std: float) -> float:
        return float(self._rng.normal(0.0, std)) if std > 0 else 0.0


def build_sim(P: Dict, start: Optional[Tuple[float, float, float]] = None):
    """
    Build (robot, gyro, localizer) from the `sim` and `vision.field_tags` config sections.
    """
    S = P["sim"]
    x0, y0, h0 = start if start is not None else tuple(float(v) for v in S.get("start", (0.0, 0.0, 0.0)))
    robot = SimulatedRobot(
        x=x0, y=y0, heading=h0,
        dt_s=float(S.get("dt_s", 0.02)),
        max_speed_cm_s=float(S.get("max_speed_cm_s", 50.0)),
        max_turn_dps=float(S.get("max_turn_dps", 180.0)),
    )
    seed = int(S.get("seed", 1234))
    gyro = SimulatedGyro(
        robot,
        bias_deg=float(S.get("gyro_bias_deg", 0.0)),
        drift_dps=float(S.get("gyro_drift_dps", 0.0)),
        noise_deg=float(S.get("gyro_noise_deg", 0.0)),
        seed=seed,
    )
    field_tags = P.get("vision", {}).get("field_tags") or {}
    tags = {int(k): (float(v[0]), float(v[1])) for k, v in field_tags.items()} or {0: (0.0, 0.0)}
    localizer = SimulatedTagLocalizer(
        robot,
        tags=tags,
        range_cm=float(S.get("vision_range_cm", 150.0)),
        noise_cm=float(S.get("vision_noise_cm", 0.0)),
        heading_noise_deg=float(S.get("vision_heading_noise_deg", 0.0)),
        dropout=float(S.get("vision_dropout", 0.0)),
        seed=seed + 1,
    )
    return robot, gyro, localizer
