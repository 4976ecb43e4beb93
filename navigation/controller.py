from __future__ import annotations

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from common.geometry import bearing_deg, distance, heading_error
from common.logging_setup import get_logger
from common.types import STOP, ActuationSink, DriveCommand, FusedPose, NavigationTarget, PoseSource
from common.utils import clamp


log = get_logger("navigation")


@dataclass(frozen=True, slots=True)
class AxisLimits:
    """Per-axis magnitude caps applied to every automatic command."""
    forward: float = 0.5
    strafe: float = 0.5
    turn: float = 0.3

    def __post_init__(self) -> None:
        if min(self.forward, self.strafe, self.turn) < 0:
            raise ValueError("axis limits must be >= 0")

    def clip(self, command: DriveCommand) -> DriveCommand:
        return DriveCommand(
            forward=clamp(command.forward, -self.forward, self.forward),
            strafe=clamp(command.strafe, -self.strafe, self.strafe),
            turn=clamp(command.turn, -self.turn, self.turn),
        )

    @classmethod
    def from_config(cls, d: Optional[Dict]) -> "AxisLimits":
        d = d or {}
        return cls(float(d.get("forward", 0.5)), float(d.get("strafe", 0.5)), float(d.get("turn", 0.3)))


@dataclass(frozen=True, slots=True)
class AxisGains:
    """
    Error -> power gains for the teleop-gain path.
    e.g. forward ramps to 50% power at a 25 cm error (0.50 / 25.0).
    """
    forward: float = 0.02
    strafe: float = 0.015
    turn: float = 0.01

    @classmethod
    def from_config(cls, d: Optional[Dict]) -> "AxisGains":
        d = d or {}
        return cls(float(d.get("forward", 0.02)), float(d.get("strafe", 0.015)), float(d.get("turn", 0.01)))


class NavigationStatus(str, Enum):
    ARRIVED = "arrived"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class NavigationResult:
    """
    Outcome of navigate_to. Timeouts and cancellation are results, not exceptions.

    Attributes:
        status: ARRIVED / TIMEOUT / CANCELLED
        pose: last pose read
        iterations: commands issued (approach + final heading)
        elapsed_s: wall time spent
        distance: remaining distance to target (cm)
        heading_error: remaining final-heading error (deg)
    """
    status: NavigationStatus
    pose: FusedPose
    iterations: int
    elapsed_s: float
    distance: float
    heading_error: float

    @property
    def ok(self) -> bool:
        return self.status == NavigationStatus.ARRIVED


def approach_command(pose: FusedPose, target: NavigationTarget) -> Tuple[DriveCommand, float, float]:
    """
    Unclipped approach command toward target plus (distance, angular error deg).

    forward = cos(err), strafe = sin(err), turn = err(rad) / pi, where err is the
    bearing to the target relative to the current heading.
    """
    d = distance(pose.x, pose.y, target.x, target.y)
    err = heading_error(bearing_deg(pose.x, pose.y, target.x, target.y), pose.heading)
    rad = math.radians(err)
    return DriveCommand(math.cos(rad), math.sin(rad), rad / math.pi), d, err


class NavigationController:
    """
    Turns pose error into bounded drive commands; also passes manual teleop through.

    Args:
        pose_source: object exposing a `pose` FusedPose snapshot (the estimator)
        sink: actuation sink with send(DriveCommand)
        limits / gains: clip caps and teleop gains
        poll_interval_s: pause between navigate_to iterations (0 = no pause)
        timeout_s: default navigate_to deadline (None = no deadline)
        face_scale: divisor for drive_toward
        active: cooperative cancellation predicate (e.g. the estimator's `running`)
        sleep / clock: injectable for tests
    """

    def __init__(
        self,
        pose_source: PoseSource,
        sink: ActuationSink,
        *,
        limits: AxisLimits = AxisLimits(),
        gains: AxisGains = AxisGains(),
        poll_interval_s: float = 0.02,
        timeout_s: Optional[float] = None,
        face_scale: float = 30.0,
        active: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if face_scale == 0:
            raise ValueError("face_scale must be non-zero")
        self.pose_source = pose_source
        self.sink = sink
        self.limits = limits
        self.gains = gains
        self.poll_interval_s = max(0.0, float(poll_interval_s))
        self.timeout_s = timeout_s
        self.face_scale = float(face_scale)
        self.active = active
        self._sleep = sleep
        self._clock = clock
        self._last_command: DriveCommand = STOP

    @property
    def last_command(self) -> DriveCommand:
        return self._last_command

    def _emit(self, command: DriveCommand) -> DriveCommand:
        self._last_command = command
        self.sink.send(command)
        return command

    # -------------------------
    # Direct drive
    # -------------------------
    def drive_manual(
        self,
        forward: float,
        strafe: float,
        turn: float,
        *,
        forward_scale: float = 1.0,
        strafe_scale: float = 1.0,
        turn_scale: float = 1.0,
    ) -> DriveCommand:
        """Teleop passthrough: axes times the caller's reduction factors, no clipping."""
        return self._emit(DriveCommand(forward * forward_scale, strafe * strafe_scale, turn * turn_scale))

    def drive_toward(self, heading_error: float, scale: Optional[float] = None) -> DriveCommand:
        """Spin in place: turn = -heading_error / scale, clipped."""
        s = self.face_scale if scale is None else float(scale)
        if s == 0:
            raise ValueError("scale must be non-zero")
        return self._emit(self.limits.clip(DriveCommand(0.0, 0.0, -float(heading_error) / s)))

    def face_origin(self) -> DriveCommand:
        """Rotate toward field heading 0 using the current yaw alone."""
        return self.drive_toward(self.pose_source.pose.heading)

    def drive_with_gains(self, forward_error: float, strafe_error: float, heading_error: float) -> DriveCommand:
        g = self.gains
        cmd = DriveCommand(forward_error * g.forward, strafe_error * g.strafe, heading_error * g.turn)
        return self._emit(self.limits.clip(cmd))

    def stop(self) -> DriveCommand:
        return self._emit(STOP)

    # -------------------------
    # Point-to-point
    # -------------------------
    def navigate_to(
        self,
        target: NavigationTarget,
        *,
        timeout_s: Optional[float] = None,
        active: Optional[Callable[[], bool]] = None,
    ) -> NavigationResult:
        """
        Drive to target position, then rotate to target heading. Blocks until
        both phases are within tolerance, the deadline passes, or `active` turns false.
        """
        timeout = self.timeout_s if timeout_s is None else timeout_s
        active = active or self.active
        t0 = self._clock()
        deadline = None if timeout is None else t0 + float(timeout)
        iterations = 0

        def halted() -> Optional[NavigationStatus]:
            if active is not None and not active():
                return NavigationStatus.CANCELLED
            if deadline is not None and self._clock() >= deadline:
                return NavigationStatus.TIMEOUT
            return None

        log.info("navigate_to start", extra={"extra": {"target": [target.x, target.y, target.heading],
                                                       "timeout_s": timeout}})

        pose = self.pose_source.pose
        cmd, d, err = approach_command(pose, target)
        while d > target.position_tolerance:
            status = halted()
            if status is not None:
                return self._finish(status, pose, target, iterations, t0)
            self._emit(self.limits.clip(cmd))
            iterations += 1
            self._pause()
            pose = self.pose_source.pose
            cmd, d, err = approach_command(pose, target)

        herr = heading_error(target.heading, pose.heading)
        while abs(herr) > target.heading_tolerance:
            status = halted()
            if status is not None:
                return self._finish(status, pose, target, iterations, t0)
            self._emit(self.limits.clip(DriveCommand(0.0, 0.0, math.radians(herr) / math.pi)))
            iterations += 1
            self._pause()
            pose = self.pose_source.pose
            herr = heading_error(target.heading, pose.heading)

        return self._finish(NavigationStatus.ARRIVED, pose, target, iterations, t0)

    def _pause(self) -> None:
        if self.poll_interval_s > 0:
            self._sleep(self.poll_interval_s)

    def _finish(
        self,
        status: NavigationStatus,
        pose: FusedPose,
        target: NavigationTarget,
        iterations: int,
        t0: float,
    ) -> NavigationResult:
        self.stop()
        result = NavigationResult(
            status=status,
            pose=pose,
            iterations=iterations,
            elapsed_s=self._clock() - t0,
            distance=distance(pose.x, pose.y, target.x, target.y),
            heading_error=heading_error(target.heading, pose.heading),
        )
        extra = {"extra": {"status": status.value, "iterations": iterations,
                           "distance": round(result.distance, 3),
                           "heading_error": round(result.heading_error, 3)}}
        if result.ok:
            log.info("navigate_to arrived", extra=extra)
        else:
            log.warning("navigate_to stopped early", extra=extra)
        return result
