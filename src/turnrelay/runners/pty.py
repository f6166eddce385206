from __future__ import annotations

import base64
import fcntl
import json
import logging
import os
import pty
import selectors
import signal
import socket
import struct
import subprocess
import threading
import time
import tty
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import termios
from pydantic import ValidationError

from ..contracts.v1 import InjectFrame
from ..daemon.server import DaemonPaths, call_daemon, default_paths, open_wrapper_link
from ..kernel.detector import DetectorConfig, TurnBoundary, TurnDetector

logger = logging.getLogger(__name__)

BRACKETED_PASTE_ON = b"\x1b[?2004h"
BRACKETED_PASTE_OFF = b"\x1b[?2004l"
PASTE_START = b"\x1b[200~"
PASTE_END = b"\x1b[201~"

CTRL_C = b"\x03"

_MAX_LINK_LINE = 64 * 1024 * 1024
IDLE_POLL_S = 0.2


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    try:
        winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except OSError:
        pass


def _get_winsize(fd: int) -> Optional[Tuple[int, int]]:
    try:
        raw = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\x00" * 8)
        rows, cols, _, _ = struct.unpack("HHHH", raw)
    except OSError:
        return None
    if rows <= 0 or cols <= 0:
        return None
    return int(cols), int(rows)


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except OSError:
        try:
            os.kill(pid, sig)
        except OSError:
            pass


def _write_all(fd: int, data: bytes, *, max_attempts: int = 50) -> bool:
    """Write to a possibly non-blocking fd, retrying on EAGAIN and partial writes."""
    remaining = data
    attempt = 0
    while remaining and attempt < max_attempts:
        try:
            written = os.write(fd, remaining)
            if written <= 0:
                return False
            remaining = remaining[written:]
            attempt = 0
        except BlockingIOError:
            attempt += 1
            time.sleep(0.1)
        except OSError:
            return False
    return len(remaining) == 0


class BrokerLink:
    """A wrapper's connection to the broker.

    Registration happens over a persistent link that also carries inject frames.
    If the broker is down the wrapper keeps running: the latest completed turn
    is held locally and reported once a later registration attempt succeeds.
    """

    def __init__(
        self,
        *,
        session_id: Optional[str] = None,
        command: Sequence[str] = (),
        detect: str = "local",
        require_input: Optional[bool] = None,
        paths: Optional[DaemonPaths] = None,
        timeout_s: float = 5.0,
    ) -> None:
        self._requested_id = str(session_id or "").strip() or None
        self.session_id: Optional[str] = self._requested_id
        self._command = [str(x) for x in command]
        self._detect = detect
        self._require_input = require_input
        self._paths = paths or default_paths()
        self._timeout_s = float(timeout_s)
        self._sock: Optional[socket.socket] = None
        self._rbuf = b""
        self._pending: Optional[TurnBoundary] = None
        self._child_pid = 0
        self.broker_detect = False
        self.last_error: Dict[str, Any] = {}

    @property
    def sock(self) -> Optional[socket.socket]:
        return self._sock

    @property
    def registered(self) -> bool:
        return self._sock is not None

    @property
    def pending(self) -> Optional[TurnBoundary]:
        return self._pending

    def register(self, *, child_pid: int = 0) -> bool:
        if child_pid:
            self._child_pid = int(child_pid)
        if self._sock is not None:
            return True
        args: Dict[str, Any] = {
            "pid": os.getpid(),
            "child_pid": self._child_pid,
            "command": self._command,
            "detect": self._detect,
        }
        if self.session_id:
            args["session_id"] = self.session_id
        if self._require_input is not None:
            args["require_input"] = bool(self._require_input)
        sock, resp, rest = open_wrapper_link(args, paths=self._paths, timeout_s=self._timeout_s)
        if sock is None:
            self.last_error = dict(resp.get("error") or {})
            logger.info("broker registration failed: %s", self.last_error.get("code", ""), extra={"op": "wrap_register"})
            return False
        session = (resp.get("result") or {}).get("session") or {}
        self.session_id = str(session.get("session_id") or self.session_id or "")
        self._sock = sock
        self._rbuf = rest
        self.broker_detect = self._detect == "broker"
        self.last_error = {}
        logger.info("registered with broker", extra={"op": "wrap_register", "session_id": self.session_id})
        if self._pending is not None:
            pending, self._pending = self._pending, None
            self.report(pending)
        return True

    def report(self, boundary: TurnBoundary) -> Optional[str]:
        """Report a completed turn; returns its turn id, or None if held for later."""
        if self._sock is None and not self.register():
            self._pending = boundary
            return None
        resp = self._call(
            "report_turn",
            {
                "session_id": self.session_id,
                "content_b64": base64.b64encode(boundary.content).decode("ascii"),
                "started_at": boundary.started_at,
                "completed_at": boundary.completed_at,
                "byte_length": boundary.byte_length,
                "truncated": boundary.truncated,
                "interrupted": boundary.interrupted,
            },
        )
        if resp is None:
            self._pending = boundary
            return None
        turn_id = str((resp.get("result") or {}).get("turn_id") or "")
        logger.info("turn reported", extra={"op": "report_turn", "session_id": self.session_id, "turn_id": turn_id})
        return turn_id

    def feed_output(self, data: bytes) -> bool:
        resp = self._call(
            "feed_output",
            {"session_id": self.session_id, "content_b64": base64.b64encode(data).decode("ascii")},
        )
        return resp is not None

    def signal(self, name: str) -> bool:
        return self._call("session_signal", {"session_id": self.session_id, "signal": name}) is not None

    def _call(self, op: str, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        resp = call_daemon({"op": op, "args": args}, paths=self._paths, timeout_s=self._timeout_s)
        if resp.get("ok"):
            return resp
        err = dict(resp.get("error") or {})
        self.last_error = err
        if err.get("code") in ("daemon_unavailable", "session_not_found"):
            self.drop()
        logger.warning("%s failed: %s", op, err.get("message", ""), extra={"op": op, "session_id": self.session_id})
        return None

    def read_frames(self) -> List[bytes]:
        """Drain inject frames from the link; call when its socket is readable."""
        if self._sock is None:
            return []
        try:
            chunk = self._sock.recv(65536)
        except BlockingIOError:
            return []
        except OSError:
            chunk = b""
        if not chunk:
            logger.warning("broker link lost", extra={"op": "wrap_link", "session_id": self.session_id})
            self.drop()
            return []
        self._rbuf += chunk
        return self._take_frames()

    def _take_frames(self) -> List[bytes]:
        out: List[bytes] = []
        while b"\n" in self._rbuf:
            line, self._rbuf = self._rbuf.split(b"\n", 1)
            try:
                frame = InjectFrame.model_validate(json.loads(line.decode("utf-8", errors="replace")))
                out.append(base64.b64decode(frame.args.content_b64.encode("ascii"), validate=True))
            except (ValueError, ValidationError):
                logger.warning("dropping malformed link frame", extra={"op": "inject", "session_id": self.session_id})
        if len(self._rbuf) > _MAX_LINK_LINE:
            self._rbuf = b""
        return out

    def drop(self) -> None:
        sock, self._sock = self._sock, None
        self._rbuf = b""
        self.broker_detect = False
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def close(self) -> None:
        if self._sock is not None and self.session_id:
            call_daemon({"op": "wrap_unregister", "args": {"session_id": self.session_id}}, paths=self._paths, timeout_s=self._timeout_s)
        self.drop()


class WrappedSession:
    """Runs one command on a PTY between the operator terminal and the agent.

    Bytes pass through unmodified in both directions. Output is fed to a turn
    detector (local, or hosted by the broker); Enter arms it, Ctrl-C interrupts
    the current turn, and child exit closes it.
    """

    def __init__(
        self,
        command: Iterable[str],
        *,
        link: Optional[BrokerLink] = None,
        detector_config: Optional[DetectorConfig] = None,
        bracketed_paste: bool = True,
        stdin_fd: int = 0,
        stdout_fd: int = 1,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        cmd = [str(x) for x in command if str(x).strip()]
        if not cmd:
            raise ValueError("missing command")
        self._command = cmd
        self._link = link
        self._detector = TurnDetector(detector_config)
        self._bracketed_paste_setting = bool(bracketed_paste)
        self._stdin_fd = int(stdin_fd)
        self._stdout_fd = int(stdout_fd)
        self._cwd = cwd
        self._env = dict(env or {})
        self._mode_tail = b""
        self._bracketed_paste = False
        # Detector time is monotonic; reported timestamps are epoch seconds.
        self._clock_offset = time.time() - time.monotonic()
        self.recent: Deque[TurnBoundary] = deque(maxlen=32)
        self._proc: Optional[subprocess.Popen] = None
        self._master_fd = -1
        self._cmd_r, self._cmd_w = os.pipe()
        os.set_blocking(self._cmd_r, False)
        os.set_blocking(self._cmd_w, False)
        self._selector = selectors.DefaultSelector()
        self._link_sock: Optional[socket.socket] = None

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    @property
    def detector(self) -> TurnDetector:
        return self._detector

    def bracketed_paste_enabled(self) -> bool:
        return bool(self._bracketed_paste)

    def _spawn(self) -> None:
        master_fd, slave_fd = pty.openpty()
        size = _get_winsize(self._stdin_fd) if os.isatty(self._stdin_fd) else None
        cols, rows = size or (120, 40)
        _set_winsize(master_fd, cols=cols, rows=rows)
        os.set_blocking(master_fd, False)

        proc_env = os.environ.copy()
        proc_env.update(self._env)
        proc_env.setdefault("TERM", "xterm-256color")

        def _preexec() -> None:
            os.setsid()
            try:
                fcntl.ioctl(0, termios.TIOCSCTTY, 0)
            except OSError:
                pass

        self._proc = subprocess.Popen(
            self._command,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=str(self._cwd) if self._cwd else None,
            env=proc_env,
            close_fds=True,
            preexec_fn=_preexec,
        )
        os.close(slave_fd)
        self._master_fd = master_fd

    def run(self) -> int:
        self._spawn()
        logger.info("child started: %s", " ".join(self._command), extra={"op": "wrap", "pid": self.pid})
        if self._link is not None:
            self._link.register(child_pid=self.pid)

        restore = None
        if os.isatty(self._stdin_fd):
            restore = termios.tcgetattr(self._stdin_fd)
            tty.setraw(self._stdin_fd)
        handlers = self._install_signal_handlers()
        try:
            self._loop()
        finally:
            if restore is not None:
                termios.tcsetattr(self._stdin_fd, termios.TCSADRAIN, restore)
            for sig, old in handlers:
                if old is not None:
                    signal.signal(sig, old)
            self._close_fds()
        return self._finish()

    def _install_signal_handlers(self) -> List[Tuple[signal.Signals, Any]]:
        if threading.current_thread() is not threading.main_thread():
            return []

        def _on_winch(signum: int, frame: Any) -> None:
            self._wake(b"w")

        def _on_int(signum: int, frame: Any) -> None:
            self._wake(b"i")

        out: List[Tuple[signal.Signals, Any]] = []
        for sig, handler in ((signal.SIGWINCH, _on_winch), (signal.SIGINT, _on_int)):
            out.append((sig, signal.signal(sig, handler)))
        return out

    def _wake(self, tag: bytes) -> None:
        try:
            os.write(self._cmd_w, tag)
        except OSError:
            pass

    def _loop(self) -> None:
        assert self._proc is not None
        self._selector.register(self._master_fd, selectors.EVENT_READ, data="pty")
        self._selector.register(self._cmd_r, selectors.EVENT_READ, data="cmd")
        stdin_open = True
        try:
            self._selector.register(self._stdin_fd, selectors.EVENT_READ, data="stdin")
        except (OSError, ValueError):
            stdin_open = False

        running = True
        while running:
            self._sync_link_selector()
            for key, mask in self._selector.select(timeout=self._select_timeout()):
                kind = key.data
                if kind == "pty":
                    running = self._on_pty_readable()
                elif kind == "stdin" and stdin_open:
                    stdin_open = self._on_stdin_readable()
                    if not stdin_open:
                        self._selector.unregister(self._stdin_fd)
                elif kind == "cmd":
                    self._on_cmd_readable()
                elif kind == "link":
                    self._on_link_readable()
                if not running:
                    break
            self._handle(self._detector.tick(time.monotonic()))
            if running and self._proc.poll() is not None:
                # Drain whatever the child wrote before exiting; orphaned
                # grandchildren holding the PTY do not keep the wrapper alive.
                self._on_pty_readable()
                running = False

    def _select_timeout(self) -> float:
        """Sleep until the detector can next change state, capped so child exit is noticed."""
        deadline = self._detector.next_deadline()
        if deadline is None:
            return IDLE_POLL_S
        return min(IDLE_POLL_S, max(0.0, deadline - time.monotonic()))

    def _sync_link_selector(self) -> None:
        sock = self._link.sock if self._link is not None else None
        if sock is self._link_sock:
            return
        if self._link_sock is not None:
            try:
                self._selector.unregister(self._link_sock)
            except (KeyError, ValueError, OSError):
                pass
        self._link_sock = sock
        if sock is not None:
            self._selector.register(sock, selectors.EVENT_READ, data="link")

    def _on_pty_readable(self) -> bool:
        while True:
            try:
                chunk = os.read(self._master_fd, 65536)
            except BlockingIOError:
                return True
            except OSError:
                # EIO: the child side of the PTY is gone.
                return False
            if not chunk:
                return False
            _write_all(self._stdout_fd, chunk)
            self._update_input_modes(chunk)
            self._on_output(chunk)

    def _on_output(self, chunk: bytes) -> None:
        link = self._link
        if link is not None and link.broker_detect:
            if link.feed_output(chunk):
                return
            # Broker went away mid-session: detect locally from here on.
            logger.warning("broker-side detection lost; detecting locally", extra={"op": "feed_output"})
        self._handle(self._detector.feed(chunk, time.monotonic()))

    def _on_stdin_readable(self) -> bool:
        try:
            data = os.read(self._stdin_fd, 65536)
        except BlockingIOError:
            return True
        except OSError:
            return False
        if not data:
            return False
        _write_all(self._master_fd, data)
        if CTRL_C in data:
            self._signal("reset")
        elif b"\r" in data or b"\n" in data:
            self._signal("input")
        return True

    def _signal(self, name: str) -> None:
        link = self._link
        if link is not None and link.broker_detect and link.signal(name):
            return
        now = time.monotonic()
        if name == "reset":
            self._handle(self._detector.reset(now))
        else:
            self._handle(self._detector.notify_input(now))

    def _on_cmd_readable(self) -> None:
        try:
            tags = os.read(self._cmd_r, 4096)
        except OSError:
            return
        if b"w" in tags:
            size = _get_winsize(self._stdin_fd)
            if size is not None:
                _set_winsize(self._master_fd, cols=size[0], rows=size[1])
                _best_effort_killpg(self.pid, signal.SIGWINCH)
        if b"i" in tags:
            # SIGINT reached the wrapper itself (stdin not in raw mode): pass it on.
            _best_effort_killpg(self.pid, signal.SIGINT)
            self._signal("reset")

    def _on_link_readable(self) -> None:
        if self._link is None:
            return
        for content in self._link.read_frames():
            self.inject(content)

    def inject(self, content: bytes) -> bool:
        data = bytes(content)
        if self._bracketed_paste_setting and self._bracketed_paste:
            data = PASTE_START + data + PASTE_END
        ok = _write_all(self._master_fd, data)
        logger.info("injected %d bytes ok=%s", len(content), ok, extra={"op": "inject"})
        return ok

    def _update_input_modes(self, chunk: bytes) -> None:
        data = (self._mode_tail or b"") + chunk
        last_enable = data.rfind(BRACKETED_PASTE_ON)
        last_disable = data.rfind(BRACKETED_PASTE_OFF)
        if last_enable >= 0 or last_disable >= 0:
            self._bracketed_paste = last_enable > last_disable
        keep = max(len(BRACKETED_PASTE_ON), len(BRACKETED_PASTE_OFF)) - 1
        self._mode_tail = data[-keep:]

    def _handle(self, boundaries: List[TurnBoundary]) -> None:
        for b in boundaries:
            wall = TurnBoundary(
                content=b.content,
                started_at=b.started_at + self._clock_offset,
                completed_at=b.completed_at + self._clock_offset,
                byte_length=b.byte_length,
                truncated=b.truncated,
                interrupted=b.interrupted,
            )
            self.recent.append(wall)
            logger.info(
                "turn complete bytes=%d interrupted=%s",
                wall.byte_length,
                wall.interrupted,
                extra={"op": "detect"},
            )
            if self._link is not None:
                self._link.report(wall)

    def _close_fds(self) -> None:
        try:
            self._selector.close()
        except OSError:
            pass
        for fd in (self._master_fd, self._cmd_r, self._cmd_w):
            try:
                os.close(fd)
            except OSError:
                pass

    def _finish(self) -> int:
        assert self._proc is not None
        try:
            rc = self._proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            _best_effort_killpg(self.pid, signal.SIGKILL)
            rc = self._proc.wait()
        self._handle(self._detector.close(time.monotonic()))
        if self._link is not None:
            self._link.close()
        logger.info("child exited rc=%s", rc, extra={"op": "wrap", "pid": self.pid})
        if rc < 0:
            return 128 + (-rc)
        return int(rc)
