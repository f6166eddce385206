"""Delivery sinks: where relayed turn content ends up.

Each sink exposes `deliver(content, turn)` and raises SinkDeliveryFailed on any
failure. Sinks never touch broker state; the broker calls them after releasing
its locks.
"""
from __future__ import annotations

import base64
import json
import logging
import shutil
import socket
import subprocess
import threading
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence

from ..contracts.v1 import InjectArgs, InjectFrame, SinkSpec
from ..errors import InvalidArgs, SinkDeliveryFailed
from ..kernel.registry import Turn
from ..util.fs import atomic_write_bytes

if TYPE_CHECKING:
    from .broker import Broker

logger = logging.getLogger(__name__)


class Sink(Protocol):
    @property
    def label(self) -> str: ...

    def deliver(self, content: bytes, turn: Turn) -> None: ...


class ClipboardSink:
    """Pipe content into the first clipboard tool that is installed and succeeds."""

    def __init__(self, commands: Sequence[Sequence[str]], *, timeout_s: float = 5.0) -> None:
        self._commands = [list(c) for c in commands if c]
        self._timeout_s = float(timeout_s)
        self.backend = ""

    @property
    def label(self) -> str:
        return "clipboard"

    def deliver(self, content: bytes, turn: Turn) -> None:
        tried: List[str] = []
        for command in self._commands:
            executable = command[0]
            if shutil.which(executable) is None:
                continue
            tried.append(executable)
            try:
                subprocess.run(
                    command,
                    input=content,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    check=True,
                    timeout=self._timeout_s,
                )
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning("clipboard: %s failed: %s", executable, e, extra={"sink": "clipboard", "turn_id": turn.turn_id})
                continue
            self.backend = executable
            return
        if not tried:
            raise SinkDeliveryFailed(
                "clipboard",
                "no clipboard tool found",
                details={"candidates": [c[0] for c in self._commands]},
            )
        raise SinkDeliveryFailed("clipboard", "all clipboard tools failed", details={"tried": tried})


class FileSink:
    """Write exactly the turn content to a file, replacing it atomically."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def label(self) -> str:
        return f"file:{self._path}"

    def deliver(self, content: bytes, turn: Turn) -> None:
        try:
            atomic_write_bytes(self._path, content)
        except OSError as e:
            raise SinkDeliveryFailed(self.label, str(e), details={"path": str(self._path)}) from e


class WrapperLink:
    """The persistent connection a wrapper keeps open to receive inject frames.

    Sends are serialized so two concurrent pastes never interleave frames.
    """

    def __init__(self, conn: socket.socket, *, send_timeout_s: float = 5.0) -> None:
        self._conn = conn
        # Readers must select() before recv(); the timeout bounds sendall only.
        self._conn.settimeout(float(send_timeout_s))
        self._lock = threading.Lock()
        self._closed = False

    @property
    def conn(self) -> socket.socket:
        return self._conn

    @property
    def closed(self) -> bool:
        return self._closed

    def push_inject(self, content: bytes, *, turn_id: str = "") -> None:
        frame = InjectFrame(args=InjectArgs(content_b64=base64.b64encode(content).decode("ascii"), turn_id=turn_id))
        data = (json.dumps(frame.model_dump(), ensure_ascii=False) + "\n").encode("utf-8")
        with self._lock:
            if self._closed:
                raise OSError("link closed")
            try:
                self._conn.sendall(data)
            except OSError:
                self._closed = True
                raise

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._conn.close()
        except OSError:
            pass


class InjectSink:
    def __init__(self, session_id: str, link: Optional[WrapperLink]) -> None:
        self._session_id = str(session_id)
        self._link = link

    @property
    def label(self) -> str:
        return f"inject:{self._session_id}"

    def deliver(self, content: bytes, turn: Turn) -> None:
        link = self._link
        if link is None:
            raise SinkDeliveryFailed(self.label, "session has no wrapper link", details={"session_id": self._session_id})
        if link.closed:
            raise SinkDeliveryFailed(self.label, "wrapper link closed", details={"session_id": self._session_id})
        try:
            link.push_inject(content, turn_id=turn.turn_id)
        except OSError as e:
            raise SinkDeliveryFailed(self.label, f"wrapper link write failed: {e}", details={"session_id": self._session_id}) from e


def build_sink(spec: SinkSpec, broker: "Broker") -> Sink:
    if spec.kind == "clipboard":
        s = broker.settings.sinks
        return ClipboardSink(s.clipboard_commands, timeout_s=s.delivery_timeout_s)
    if spec.kind == "file":
        path = Path(str(spec.path or "")).expanduser()
        if not path.is_absolute():
            raise InvalidArgs("file sink path must be absolute", details={"path": str(spec.path or "")})
        return FileSink(path)
    if spec.kind == "inject":
        return broker.inject_sink(str(spec.session_id or ""))
    raise InvalidArgs(f"unknown sink kind: {spec.kind}")
