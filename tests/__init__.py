"""
Yaw-lock navigation test suite

Structure:
- unit/: heading math, estimator state machine, controller, AprilTag transform, config, telemetry
- integration/: simulated closed loop and threaded session
"""
