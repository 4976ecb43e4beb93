"""
Navigation: pose-based drive control.

Provides:
- NavigationController: manual passthrough, face-heading, gain drive, and
  blocking point-to-point navigate_to with deadline/cancellation
- service.py: session CLI wiring sim sensors, estimator thread, telemetry and targets

Entry point:
    python -m navigation.service --config config/params.yaml --target 60,40,90
"""
from .controller import (
    AxisGains,
    AxisLimits,
    NavigationController,
    NavigationResult,
    NavigationStatus,
)

__all__ = ["AxisGains", "AxisLimits", "NavigationController", "NavigationResult", "NavigationStatus"]
