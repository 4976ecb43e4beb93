"""
Estimator: yaw-lock pose fusion.

PoseEstimator pulls tag fixes and gyro heading every cycle and publishes an
immutable FusedPose snapshot for the navigation controller and telemetry.
"""
from .pose_estimator import PoseEstimator, average_fixes

__all__ = ["PoseEstimator", "average_fixes"]
