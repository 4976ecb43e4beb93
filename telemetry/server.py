from __future__ import annotations

import threading
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI

from common.types import lock_to_dict
from estimator.pose_estimator import PoseEstimator
from navigation.controller import NavigationController


def _stale_dict(estimator: PoseEstimator) -> Optional[Dict[str, Any]]:
    s = estimator.staleness()
    if s is None:
        return None
    return {"cycles_since_fix": s.cycles_since_fix, "never_fixed": s.never_fixed}


def create_app(estimator: PoseEstimator, controller: Optional[NavigationController] = None) -> FastAPI:
    """Read-only telemetry over the estimator's published state."""
    app = FastAPI(title="Yaw-lock Pose Telemetry", version="0.1.0")

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "running": estimator.running,
            "lock_acquired": estimator.lock.acquired,
            "stale": _stale_dict(estimator) is not None,
            "rate_hz": round(estimator.rate_hz, 2),
        }

    @app.get("/pose")
    def pose():
        return {**estimator.pose.to_dict(), "stale": _stale_dict(estimator)}

    @app.get("/lock")
    def lock():
        return lock_to_dict(estimator.lock)

    @app.get("/command")
    def command():
        if controller is None:
            return {"forward": None, "strafe": None, "turn": None}
        return controller.last_command.to_dict()

    return app


def serve_in_thread(app: FastAPI, host: str = "127.0.0.1", port: int = 8000) -> uvicorn.Server:
    """Start uvicorn on a daemon thread; call `server.should_exit = True` to stop it."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    t = threading.Thread(target=server.run, name="telemetry", daemon=True)
    t.start()
    return server
