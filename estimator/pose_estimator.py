"""
Pose estimator: vision fixes + gyro heading -> published FusedPose.

Yaw-lock state machine:
  Unlocked --(first non-empty vision batch)--> Locked(offset)
  Locked   --(reset_lock())-----------------> Unlocked

While unlocked the detector runs at HIGH_ACCURACY and the published heading is
the raw (normalized) gyro heading. The offset is computed once from the mean
vision heading and the gyro reading of the same cycle; afterwards heading is
normalize(raw - offset) and the detector runs BALANCED.

Position is the mean of the current vision batch whenever one arrives, locked
or not. An empty batch leaves position where it was (no dead-reckoning) and
advances cycles_since_fix.

The pose is an immutable snapshot rebound once per cycle, so readers on other
threads never see a half-updated pose.
"""
from __future__ import annotations

import threading
from typing import Optional, Sequence, Tuple

import numpy as np

from common.geometry import normalize_heading
from common.logging_setup import get_logger
from common.types import (
    FusedPose,
    Gyroscope,
    Locked,
    PositionStale,
    ResolutionHint,
    Unlocked,
    VisionDetector,
    VisionFix,
    VisionFixBatch,
    YawLock,
    lock_to_dict,
)
from common.utils import RateTimer, iso_now_ms


log = get_logger("estimator")


def average_fixes(fixes: Sequence[VisionFix]) -> Tuple[float, float, float]:
    """Arithmetic mean (x, y, heading) of a non-empty batch; headings normalized first."""
    if not fixes:
        raise ValueError("average_fixes needs at least one fix")
    arr = np.asarray([(f.x, f.y, normalize_heading(f.heading)) for f in fixes], dtype=float)
    mx, my, mh = arr.mean(axis=0)
    return float(mx), float(my), float(mh)


class PoseEstimator:
    """
    Owns FusedPose and YawLock.

    Args:
        vision: detector with get_fixes()/set_resolution_hint()/close()
        gyro: heading source with get_heading_deg()
        lock_applies_immediately: publish the offset-corrected heading on the lock
            cycle itself instead of from the next cycle
        loop_period_s: pause between cycles in run(); 0 spins without pausing
        stale_after_cycles: cycles without a fix before staleness() reports
    """

    def __init__(
        self,
        vision: VisionDetector,
        gyro: Gyroscope,
        *,
        lock_applies_immediately: bool = False,
        loop_period_s: float = 0.0,
        stale_after_cycles: int = 50,
    ) -> None:
        if stale_after_cycles < 1:
            raise ValueError("stale_after_cycles must be >= 1")
        self.vision = vision
        self.gyro = gyro
        self.lock_applies_immediately = bool(lock_applies_immediately)
        self.loop_period_s = max(0.0, float(loop_period_s))
        self.stale_after_cycles = int(stale_after_cycles)

        self._pose = FusedPose(ts=iso_now_ms())
        self._lock: YawLock = Unlocked()
        self._stop = threading.Event()
        self._loop_exited = threading.Event()
        self._loop_exited.set()
        self._thread: Optional[threading.Thread] = None
        self._rate = RateTimer()
        self._stale_reported = False
        self._vision_released = False

    # -------------------------
    # Published state
    # -------------------------
    @property
    def pose(self) -> FusedPose:
        return self._pose

    @property
    def lock(self) -> YawLock:
        return self._lock

    @property
    def running(self) -> bool:
        return not self._loop_exited.is_set() and not self._stop.is_set()

    @property
    def rate_hz(self) -> float:
        return self._rate.rate_hz

    def staleness(self) -> Optional[PositionStale]:
        p = self._pose
        if not p.has_fix:
            return PositionStale(cycles_since_fix=p.cycles_since_fix, never_fixed=True)
        if p.cycles_since_fix >= self.stale_after_cycles:
            return PositionStale(cycles_since_fix=p.cycles_since_fix)
        return None

    def reset_lock(self) -> None:
        """Drop the yaw lock; the next vision fix acquires a new offset."""
        log.info("yaw lock reset", extra={"extra": lock_to_dict(self._lock)})
        self._lock = Unlocked()

    # -------------------------
    # One cycle
    # -------------------------
    def step(self) -> FusedPose:
        # One read per cycle; a reset_lock() landing mid-cycle takes effect next cycle.
        lock = self._lock
        fixes: VisionFixBatch = tuple(self.vision.get_fixes())

        position: Optional[Tuple[float, float]] = None
        vision_heading: Optional[float] = None
        if fixes:
            mx, my, mh = average_fixes(fixes)
            position = (mx, my)
            if not lock.acquired:
                vision_heading = mh

        if isinstance(lock, Locked):
            self.vision.set_resolution_hint(ResolutionHint.BALANCED)
            raw = normalize_heading(self.gyro.get_heading_deg())
            heading = normalize_heading(raw - lock.offset)
        else:
            # Position is unreliable until heading is established: favour range.
            self.vision.set_resolution_hint(ResolutionHint.HIGH_ACCURACY)
            raw = normalize_heading(self.gyro.get_heading_deg())
            heading = raw
            if vision_heading is not None:
                lock = Locked(
                    offset=normalize_heading(vision_heading - raw),
                    raw_heading_at_first_fix=raw,
                    vision_heading_at_first_fix=vision_heading,
                )
                self._lock = lock
                log.info("yaw lock acquired", extra={"extra": {**lock_to_dict(lock), "fixes": len(fixes)}})
                if self.lock_applies_immediately:
                    heading = normalize_heading(raw - lock.offset)

        prev = self._pose
        if position is not None:
            x, y = position
            since, has_fix = 0, True
        else:
            x, y = prev.x, prev.y
            since, has_fix = prev.cycles_since_fix + 1, prev.has_fix

        pose = FusedPose(
            x=x,
            y=y,
            heading=heading,
            seq=prev.seq + 1,
            cycles_since_fix=since,
            has_fix=has_fix,
            ts=iso_now_ms(),
        )
        self._pose = pose
        self._note_staleness(pose)
        return pose

    def _note_staleness(self, pose: FusedPose) -> None:
        stale = pose.has_fix and pose.cycles_since_fix >= self.stale_after_cycles
        if stale and not self._stale_reported:
            log.warning("vision position stale", extra={"extra": {"cycles_since_fix": pose.cycles_since_fix,
                                                                  "x": pose.x, "y": pose.y}})
        elif not stale and self._stale_reported:
            log.info("vision position fresh again", extra={"extra": {"seq": pose.seq}})
        self._stale_reported = stale

    # -------------------------
    # Loop / lifecycle
    # -------------------------
    def run(self) -> None:
        """Call step() until stop() is requested. Blocks the calling thread."""
        self._loop_exited.clear()
        log.info("pose estimator loop started", extra={"extra": {"period_s": self.loop_period_s}})
        try:
            while not self._stop.is_set():
                self.step()
                hz = self._rate.tick()
                if self._pose.seq % 500 == 0:
                    log.debug("estimator rate", extra={"extra": {"hz": round(hz, 1), "seq": self._pose.seq}})
                if self.loop_period_s > 0:
                    self._stop.wait(self.loop_period_s)
        finally:
            self._loop_exited.set()
            log.info("pose estimator loop exited", extra={"extra": {"seq": self._pose.seq}})

    def start(self) -> threading.Thread:
        """Run the loop on its own daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("pose estimator already running")
        if self._vision_released:
            raise RuntimeError("pose estimator closed")
        self._stop.clear()
        self._loop_exited.clear()
        self._thread = threading.Thread(target=self.run, name="pose-estimator", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = 2.0) -> bool:
        """Clear the running flag and wait for the loop to finish its current cycle."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                return False
        return self._loop_exited.wait(timeout=timeout)

    def close(self, timeout: Optional[float] = 2.0) -> None:
        """
        Stop the loop, then release the vision resource.
        Raises RuntimeError (without releasing) if the loop is still inside a cycle.
        """
        if not self.stop(timeout=timeout):
            raise RuntimeError("pose estimator loop did not exit; vision not released")
        if not self._vision_released:
            self.vision.close()
            self._vision_released = True
            log.info("vision released")
