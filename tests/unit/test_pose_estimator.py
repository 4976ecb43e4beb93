"""
Unit tests for the yaw-lock pose estimator
"""

import os
import sys
import threading
import time

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.geometry import normalize_heading
from common.types import Locked, PositionStale, ResolutionHint, Unlocked, VisionFix
from estimator.pose_estimator import PoseEstimator, average_fixes


class ScriptedVision:
    """Returns one scripted batch per call (empty once the script runs out)."""

    def __init__(self, batches=None):
        self.batches = list(batches or [])
        self.hints = []
        self.closed = False
        self.calls = 0

    def get_fixes(self):
        if self.closed:
            raise RuntimeError("queried after close")
        self.calls += 1
        return self.batches.pop(0) if self.batches else []

    def set_resolution_hint(self, level):
        self.hints.append(level)

    def close(self):
        self.closed = True


class ScriptedGyro:
    """Returns scripted headings; repeats the last one."""

    def __init__(self, readings):
        self.readings = list(readings)
        self.last = self.readings[0]

    def get_heading_deg(self):
        if self.readings:
            self.last = self.readings.pop(0)
        return self.last


def fix(x, y, h):
    return VisionFix(x=x, y=y, heading=h)


class TestAverageFixes:
    """Test cases for batch averaging"""

    def test_two_fix_mean(self):
        """(10,20) and (30,40) average to (20,30)"""
        x, y, h = average_fixes([fix(10, 20, 0), fix(30, 40, 10)])
        assert (x, y) == pytest.approx((20.0, 30.0))
        assert h == pytest.approx(5.0)

    def test_empty_rejected(self):
        """Averaging nothing is a caller error"""
        with pytest.raises(ValueError):
            average_fixes([])


class TestYawLock:
    """Test cases for yaw-lock acquisition"""

    def test_starts_unlocked(self):
        """Fresh estimator has no lock and no fix"""
        est = PoseEstimator(ScriptedVision(), ScriptedGyro([0.0]))
        assert isinstance(est.lock, Unlocked)
        assert est.lock.acquired is False
        assert est.pose.has_fix is False

    def test_offset_from_mean_vision_heading(self):
        """offset == normalize(mean(h) - g) and acquired flips once"""
        vision = ScriptedVision([[fix(0, 0, 10.0), fix(0, 0, 20.0)]])
        est = PoseEstimator(vision, ScriptedGyro([50.0]))
        est.step()
        assert isinstance(est.lock, Locked)
        assert est.lock.offset == pytest.approx(normalize_heading(15.0 - 50.0))
        assert est.lock.raw_heading_at_first_fix == pytest.approx(50.0)
        assert est.lock.vision_heading_at_first_fix == pytest.approx(15.0)

    def test_offset_wraps(self):
        """Offset is normalized across the seam"""
        est = PoseEstimator(ScriptedVision([[fix(0, 0, 170.0)]]), ScriptedGyro([-170.0]))
        est.step()
        assert est.lock.offset == pytest.approx(-20.0)

    def test_later_fix_does_not_recompute_offset(self):
        """A second vision fix leaves the lock untouched"""
        vision = ScriptedVision([[fix(0, 0, 15.0)], [fix(5, 5, 120.0)], [fix(6, 6, -60.0)]])
        est = PoseEstimator(vision, ScriptedGyro([5.0, 40.0, 70.0]))
        est.step()
        first = est.lock
        est.step()
        est.step()
        assert est.lock is first
        assert est.lock.offset == pytest.approx(10.0)

    def test_locked_heading_applies_offset(self):
        """lockOffset=10, g=95 -> heading 85"""
        vision = ScriptedVision([[fix(0, 0, 15.0)]])
        est = PoseEstimator(vision, ScriptedGyro([5.0, 95.0]))
        est.step()
        assert est.lock.offset == pytest.approx(10.0)
        pose = est.step()
        assert pose.heading == pytest.approx(85.0)

    def test_lock_cycle_publishes_raw_heading_by_default(self):
        """Default: the offset takes effect from the cycle after acquisition"""
        est = PoseEstimator(ScriptedVision([[fix(0, 0, 15.0)]]), ScriptedGyro([5.0]))
        pose = est.step()
        assert est.lock.acquired
        assert pose.heading == pytest.approx(5.0)

    def test_lock_cycle_applies_offset_when_immediate(self):
        """lock_applies_immediately publishes the corrected heading on the lock cycle"""
        est = PoseEstimator(ScriptedVision([[fix(0, 0, 15.0)]]), ScriptedGyro([5.0, 95.0]),
                            lock_applies_immediately=True)
        pose = est.step()
        assert pose.heading == pytest.approx(normalize_heading(5.0 - 10.0))
        assert est.step().heading == pytest.approx(85.0)

    def test_no_fix_keeps_raw_heading_unlocked(self):
        """Without vision the lock never forms; heading is the normalized raw gyro"""
        est = PoseEstimator(ScriptedVision(), ScriptedGyro([370.0, -190.0, 45.0]))
        headings = [est.step().heading for _ in range(3)]
        assert headings == pytest.approx([10.0, 170.0, 45.0])
        assert est.lock.acquired is False

    def test_resolution_hint_follows_lock(self):
        """HIGH_ACCURACY until locked, BALANCED afterwards"""
        vision = ScriptedVision([[], [fix(0, 0, 0.0)], []])
        est = PoseEstimator(vision, ScriptedGyro([0.0]))
        est.step()
        est.step()
        est.step()
        assert vision.hints == [ResolutionHint.HIGH_ACCURACY, ResolutionHint.HIGH_ACCURACY,
                                ResolutionHint.BALANCED]

    def test_reset_lock_allows_reacquire(self):
        """reset_lock returns to Unlocked; the next fix sets a fresh offset"""
        vision = ScriptedVision([[fix(0, 0, 15.0)], [fix(0, 0, 40.0)]])
        est = PoseEstimator(vision, ScriptedGyro([5.0, 10.0]))
        est.step()
        est.reset_lock()
        assert isinstance(est.lock, Unlocked)
        est.step()
        assert est.lock.offset == pytest.approx(30.0)

    def test_reset_during_cycle_is_kept(self):
        """A reset landing mid-cycle finishes that cycle locked and re-acquires on the next"""
        vision = ResettingVision([[fix(0, 0, 30.0)], [fix(0, 0, 50.0)], [fix(0, 0, 70.0)]])
        est = PoseEstimator(vision, ScriptedGyro([20.0]))
        vision.estimator = est
        est.step()
        assert est.lock.offset == pytest.approx(10.0)

        vision.reset_on_next_call = True
        pose = est.step()
        assert pose.heading == pytest.approx(10.0)
        assert isinstance(est.lock, Unlocked)

        est.step()
        assert est.lock.offset == pytest.approx(50.0)


class ResettingVision(ScriptedVision):
    """Calls reset_lock() from inside get_fixes(), like another thread would mid-cycle."""

    def __init__(self, batches=None):
        super().__init__(batches)
        self.estimator = None
        self.reset_on_next_call = False

    def get_fixes(self):
        if self.reset_on_next_call:
            self.reset_on_next_call = False
            self.estimator.reset_lock()
        return super().get_fixes()


class TestPosition:
    """Test cases for position handling"""

    def test_position_is_batch_mean(self):
        """Published x/y are the mean of the batch"""
        est = PoseEstimator(ScriptedVision([[fix(10, 20, 0), fix(30, 40, 0)]]), ScriptedGyro([0.0]))
        pose = est.step()
        assert (pose.x, pose.y) == pytest.approx((20.0, 30.0))
        assert pose.has_fix and pose.cycles_since_fix == 0

    def test_empty_batch_keeps_position(self):
        """Empty batch leaves x/y unchanged and counts cycles since fix"""
        est = PoseEstimator(ScriptedVision([[fix(12, -4, 0)], [], []]), ScriptedGyro([0.0]))
        est.step()
        p2 = est.step()
        p3 = est.step()
        assert (p2.x, p2.y) == (12.0, -4.0)
        assert (p3.x, p3.y) == (12.0, -4.0)
        assert p3.cycles_since_fix == 2
        assert p3.seq == 3

    def test_position_updates_after_lock(self):
        """Vision position keeps overwriting x/y once locked"""
        est = PoseEstimator(ScriptedVision([[fix(0, 0, 0)], [fix(7, 8, 90)]]), ScriptedGyro([0.0]))
        est.step()
        pose = est.step()
        assert (pose.x, pose.y) == (7.0, 8.0)

    def test_pose_snapshots_are_new_objects(self):
        """Each step publishes a new immutable snapshot"""
        est = PoseEstimator(ScriptedVision(), ScriptedGyro([0.0]))
        before = est.pose
        after = est.step()
        assert after is not before
        assert est.pose is after
        with pytest.raises(Exception):
            after.x = 5.0  # frozen


class TestStaleness:
    """Test cases for PositionStale reporting"""

    def test_never_fixed(self):
        """Before any fix the position is stale with never_fixed"""
        est = PoseEstimator(ScriptedVision(), ScriptedGyro([0.0]))
        est.step()
        assert est.staleness() == PositionStale(cycles_since_fix=1, never_fixed=True)

    def test_stale_after_threshold(self):
        """Reports cycles since fix once the threshold is reached"""
        est = PoseEstimator(ScriptedVision([[fix(1, 1, 0)]]), ScriptedGyro([0.0]), stale_after_cycles=3)
        est.step()
        assert est.staleness() is None
        est.step()
        est.step()
        assert est.staleness() is None
        est.step()
        assert est.staleness() == PositionStale(cycles_since_fix=3)

    def test_invalid_threshold(self):
        """stale_after_cycles must be positive"""
        with pytest.raises(ValueError):
            PoseEstimator(ScriptedVision(), ScriptedGyro([0.0]), stale_after_cycles=0)


class BlockingVision(ScriptedVision):
    """get_fixes blocks until `gate` is set."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()
        self.entered = threading.Event()

    def get_fixes(self):
        self.entered.set()
        self.gate.wait(5.0)
        return super().get_fixes()


class TestLifecycle:
    """Test cases for the estimator thread and shutdown ordering"""

    def test_start_and_close(self):
        """Loop runs on its own thread; close stops it before releasing vision"""
        vision = ScriptedVision()
        est = PoseEstimator(vision, ScriptedGyro([0.0]), loop_period_s=0.001)
        est.start()
        deadline = time.monotonic() + 2.0
        while est.pose.seq < 5 and time.monotonic() < deadline:
            time.sleep(0.005)
        assert est.running
        assert est.pose.seq >= 5
        est.close()
        assert not est.running
        assert vision.closed

    def test_close_refuses_while_cycle_in_flight(self):
        """Vision is not released while the loop is stuck inside a query"""
        vision = BlockingVision()
        est = PoseEstimator(vision, ScriptedGyro([0.0]))
        est.start()
        assert vision.entered.wait(2.0)
        with pytest.raises(RuntimeError):
            est.close(timeout=0.05)
        assert not vision.closed
        vision.gate.set()
        est.close(timeout=2.0)
        assert vision.closed

    def test_start_twice_rejected(self):
        """Only one loop thread at a time"""
        est = PoseEstimator(ScriptedVision(), ScriptedGyro([0.0]), loop_period_s=0.001)
        est.start()
        try:
            with pytest.raises(RuntimeError):
                est.start()
        finally:
            est.close()
