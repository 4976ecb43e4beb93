"""
Sensors: collaborators feeding the pose estimator and taking drive commands.

Provides:
- SimulatedRobot: planar world + actuation sink for sim runs and tests
- SimulatedGyro: biased/drifting heading source
- SimulatedTagLocalizer: range-limited fiducial fixes with noise/dropout
- AprilTagLocalizer (sensors.apriltag): OpenCV camera + AprilTag PnP localizer,
  selected by the session with vision.source: camera

Usage:
    from sensors.sim import SimulatedRobot, SimulatedGyro, SimulatedTagLocalizer
    from sensors.apriltag import AprilTagLocalizer
"""
from .sim import SimulatedGyro, SimulatedRobot, SimulatedTagLocalizer, build_sim

__all__ = ["SimulatedGyro", "SimulatedRobot", "SimulatedTagLocalizer", "build_sim"]
