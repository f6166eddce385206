from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from .time import utc_iso_from_epoch


_CONFIGURED: Dict[str, bool] = {}

# Correlation keys lifted from `extra={...}` into the JSON payload.
_CORRELATION_KEYS = ("op", "session_id", "turn_id", "sink", "pid")


class JsonlFormatter(logging.Formatter):
    """One JSON object per log line.

    Broker and wrapper log records carry `op`, `session_id`, `turn_id`, `sink`
    and `pid` through `extra=`; those become top-level keys so a session or a
    turn can be followed with a plain grep across daemon and wrapper logs.
    """

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "turnrelay"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": utc_iso_from_epoch(record.created),
            "level": record.levelname,
            "component": self._component,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            (k, str(getattr(record, k)).strip())
            for k in _CORRELATION_KEYS
            if str(getattr(record, k, "") or "").strip()
        )
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            return json.dumps({"component": self._component, "level": record.levelname, "msg": "unserializable log record"})


def parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    value = getattr(logging, s, default)
    return value if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    path: Optional[Path] = None,
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    - Uses a single handler with the JSONL formatter: a FileHandler when `path`
      is given (the wrapper owns the terminal, so it must not log there),
      otherwise a StreamHandler on `stream` (default stderr).
    - `force=True` clears existing handlers.
    """
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force:
        return
    _CONFIGURED[key] = True

    lvl = parse_level(level)
    root = logging.getLogger()
    root.setLevel(lvl)

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    # Avoid duplicate handlers on repeated calls.
    for h in root.handlers:
        if isinstance(getattr(h, "formatter", None), JsonlFormatter):
            h.setLevel(lvl)
            return

    handler: logging.Handler
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(path), encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
