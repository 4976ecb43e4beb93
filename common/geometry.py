from __future__ import annotations

import math


def normalize_heading(angle: float) -> float:
    """
    Reduce a heading in degrees to the half-open interval (-180, 180].

    Both 180 and -180 map to 180. Idempotent. Non-finite input raises ValueError.
    """
    a = float(angle)
    if not math.isfinite(a):
        raise ValueError(f"heading must be finite, got {angle!r}")
    a = math.fmod(a, 360.0)  # (-360, 360)
    if a > 180.0:
        a -= 360.0
    elif a <= -180.0:
        a += 360.0
    return a


def heading_error(target: float, current: float) -> float:
    """Signed shortest rotation (deg) from `current` to `target`; CCW positive."""
    return normalize_heading(float(target) - float(current))


def bearing_deg(x0: float, y0: float, x1: float, y1: float) -> float:
    """Field bearing (deg) from (x0, y0) to (x1, y1)."""
    return math.degrees(math.atan2(float(y1) - float(y0), float(x1) - float(x0)))


def distance(x0: float, y0: float, x1: float, y1: float) -> float:
    return math.hypot(float(x1) - float(x0), float(y1) - float(y0))
