from __future__ import annotations

import os
import tempfile
from pathlib import Path


def _atomic_replace(path: Path, data: bytes) -> None:
    """Write via a temp file in the same directory, fsync, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        try:
            if os.path.exists(tmp):
                os.unlink(tmp)
        except OSError:
            pass


def atomic_write_bytes(path: Path, data: bytes) -> None:
    _atomic_replace(path, bytes(data))


def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    _atomic_replace(path, text.encode(encoding))
