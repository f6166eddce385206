"""Filesystem locations under the turnrelay home directory.

    $TURNRELAY_HOME (default ~/.turnrelay)
      settings.yaml
      daemon/turnrelayd.{sock,pid,log}
      wrap/<session>.log
"""
from __future__ import annotations

import os
import re
from pathlib import Path

HOME_ENV = "TURNRELAY_HOME"


def turnrelay_home() -> Path:
    override = os.environ.get(HOME_ENV, "").strip()
    base = Path(override).expanduser() if override else Path.home() / ".turnrelay"
    return base.resolve()


def ensure_home() -> Path:
    home = turnrelay_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def wrap_log_path(session_id: str) -> Path:
    """Per-wrapper log file; the session id is sanitized into a file name."""
    name = re.sub(r"[^A-Za-z0-9._-]", "_", str(session_id or "").strip())
    return ensure_home() / "wrap" / f"{name or f'pid-{os.getpid()}'}.log"
