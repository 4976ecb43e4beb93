"""
JSON-lines logging shared by the estimator thread, the navigation loop and telemetry.

Every record is one JSON object on stdout. `thread` tells the estimator loop
("pose-estimator") apart from the caller's navigation loop ("MainThread") and
the uvicorn thread ("telemetry"). Structured fields ride in
`extra={"extra": {...}}`, e.g.

    {"t": 1718000000123, "lvl": "INFO", "name": "estimator", "thread": "pose-estimator",
     "msg": "yaw lock acquired", "extra": {"acquired": true, "offset": 10.0, "fixes": 2}}

Values json cannot encode (enums, numpy scalars) are written with str().
"""
from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Optional


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            payload["extra"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _resolve_level(level: Optional[str]) -> int:
    # explicit arg > LOG_LEVEL env > INFO; unknown names fall back to INFO
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    lvl = logging.getLevelName(name)
    return lvl if isinstance(lvl, int) else logging.INFO


def setup_logging(level: Optional[str] = None, force: bool = False) -> None:
    """
    Install the JSON handler on the root logger.

    Module loggers call this on import with no level, so the first call wins
    unless `force=True`; the session CLI forces it again once the YAML
    `logging.level` (or --log-level) is known.
    """
    root = logging.getLogger()
    if getattr(root, "_yawlock_configured", False) and not force:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_resolve_level(level))
    root._yawlock_configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
