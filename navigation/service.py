from __future__ import annotations

"""
Navigation session: sensors (sim or camera vision) -> estimator thread -> navigate_to targets.

Examples:
  # Drive a square with the default sim, telemetry on :8000
  python -m navigation.service --config config/params.yaml \
      --target 60,0,90 --target 60,60,180 --target 0,60,-90 --target 0,0,0 --telemetry

  # Different start pose, 10 s per target
  python -m navigation.service --start 20,-30,45 --timeout 10 --target 0,0,0

  # Real webcam AprilTags (vision.camera, vision.intrinsics) on the simulated drive
  python -m navigation.service --vision camera --target 0,0,0
"""

import argparse
import time
from typing import Dict, List, Optional, Tuple

from common.config import DEFAULT_CONFIG_PATH, load_config
from common.logging_setup import get_logger, setup_logging
from common.types import NavigationTarget
from common.utils import parse_triplet
from estimator.pose_estimator import PoseEstimator
from navigation.controller import AxisGains, AxisLimits, NavigationController, NavigationResult
from sensors.apriltag import localizer_from_config
from sensors.sim import build_sim


log = get_logger("navigation.service")


class Session:
    """
    Start/stop discipline around one estimator loop.

    Shutdown order: running flag cleared -> loop exit awaited -> vision released.
    """

    def __init__(self, estimator: PoseEstimator, controller: NavigationController, *, stop_timeout_s: float = 2.0):
        self.estimator = estimator
        self.controller = controller
        self.stop_timeout_s = stop_timeout_s
        self._telemetry = None

    def start(self) -> "Session":
        self.estimator.start()
        return self

    def attach_telemetry(self, server) -> None:
        self._telemetry = server

    def wait_for_lock(self, timeout_s: float) -> bool:
        deadline = time.monotonic() + max(0.0, timeout_s)
        while not self.estimator.lock.acquired:
            if time.monotonic() >= deadline or not self.estimator.running:
                return False
            time.sleep(0.01)
        return True

    def navigate(self, targets: List[NavigationTarget]) -> List[NavigationResult]:
        results: List[NavigationResult] = []
        for tgt in targets:
            res = self.controller.navigate_to(tgt)
            results.append(res)
            if not res.ok:
                break
        return results

    def shutdown(self) -> None:
        try:
            self.controller.stop()
        finally:
            try:
                self.estimator.close(timeout=self.stop_timeout_s)
            finally:
                if self._telemetry is not None:
                    self._telemetry.should_exit = True

    def __enter__(self) -> "Session":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.shutdown()
            return
        # Keep the in-flight exception; a failed shutdown is logged only.
        try:
            self.shutdown()
        except RuntimeError:
            log.exception("session shutdown failed", extra={"extra": {"unwinding": exc_type.__name__}})


VISION_SOURCES = ("sim", "camera")


def build_session(P: Dict, start: Optional[Tuple[float, float, float]] = None):
    """
    Wire robot/gyro/vision, estimator and controller from config. Returns (session, robot).

    `vision.source: camera` swaps the simulated tag localizer for the OpenCV
    AprilTag localizer; robot and gyro stay simulated (bench mode).
    """
    robot, gyro, localizer = build_sim(P, start=start)
    source = str(P.get("vision", {}).get("source", "sim")).lower()
    if source not in VISION_SOURCES:
        raise ValueError(f"vision.source must be one of {VISION_SOURCES}, got {source!r}")
    if source == "camera":
        localizer = localizer_from_config(P)
        log.warning("camera vision with simulated gyro and drive", extra={"extra": {"camera": P["vision"].get("camera")}})
    E = P["estimator"]
    N = P["navigation"]
    estimator = PoseEstimator(
        localizer,
        gyro,
        lock_applies_immediately=bool(E.get("lock_applies_immediately", False)),
        loop_period_s=float(E.get("loop_period_s", 0.01)),
        stale_after_cycles=int(E.get("stale_after_cycles", 50)),
    )
    controller = NavigationController(
        estimator,
        robot,
        limits=AxisLimits.from_config(N.get("limits")),
        gains=AxisGains.from_config(N.get("gains")),
        poll_interval_s=float(N.get("poll_interval_s", 0.02)),
        timeout_s=N.get("timeout_s"),
        face_scale=float(N.get("face_scale", 30.0)),
        active=lambda: estimator.running,
    )
    return Session(estimator, controller), robot


def main() -> None:
    ap = argparse.ArgumentParser(description="Yaw-lock navigation session")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    ap.add_argument("--target", action="append", default=[], help="X,Y,H target (cm, cm, deg); repeatable")
    ap.add_argument("--start", default=None, help="Sim start pose X,Y,H (overrides config sim.start)")
    ap.add_argument("--timeout", type=float, default=None, help="Per-target timeout seconds (overrides config)")
    ap.add_argument("--vision", choices=VISION_SOURCES, default=None, help="Vision source (overrides config vision.source)")
    ap.add_argument("--telemetry", action="store_true", help="Serve read-only telemetry (FastAPI)")
    ap.add_argument("--log-level", default=None)
    args = ap.parse_args()

    P = load_config(args.config)
    setup_logging(args.log_level or P.get("logging", {}).get("level", "INFO"), force=True)

    if args.vision is not None:
        P["vision"]["source"] = args.vision
    if args.timeout is not None:
        P["navigation"]["timeout_s"] = args.timeout
    start = parse_triplet(args.start) if args.start else None

    N = P["navigation"]
    pos_tol = float(N.get("position_tolerance_cm", 1.0))
    hdg_tol = float(N.get("heading_tolerance_deg", 1.0))
    targets = [
        NavigationTarget(x, y, h, position_tolerance=pos_tol, heading_tolerance=hdg_tol)
        for x, y, h in (parse_triplet(t) for t in args.target)
    ]

    session, robot = build_session(P, start=start)

    T = P.get("telemetry", {})
    if args.telemetry or T.get("enabled", False):
        from telemetry.server import create_app, serve_in_thread
        server = serve_in_thread(create_app(session.estimator, session.controller),
                                 host=T.get("host", "127.0.0.1"), port=int(T.get("port", 8000)))
        session.attach_telemetry(server)
        log.info("telemetry serving", extra={"extra": {"host": T.get("host"), "port": T.get("port")}})

    try:
        with session:
            if not session.wait_for_lock(float(P["estimator"].get("lock_wait_s", 5.0))):
                log.warning("no yaw lock yet; heading is raw gyro (degraded)")
            for res in session.navigate(targets):
                log.info("target result", extra={"extra": {
                    "status": res.status.value,
                    "pose": [round(res.pose.x, 2), round(res.pose.y, 2), round(res.pose.heading, 2)],
                    "true_pose": [round(v, 2) for v in robot.true_pose],
                    "iterations": res.iterations,
                    "elapsed_s": round(res.elapsed_s, 2),
                }})
    except KeyboardInterrupt:
        log.info("interrupted")

    print("Navigation session finished.")


if __name__ == "__main__":
    main()
