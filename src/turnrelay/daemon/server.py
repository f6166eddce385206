from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import select
import signal
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .. import __version__
from ..contracts.v1 import DaemonError, DaemonRequest, DaemonResponse, SinkSpec
from ..errors import InvalidArgs, RelayError
from ..kernel.detector import TurnBoundary
from ..paths import ensure_home
from ..util.conv import coerce_bool
from ..util.fs import atomic_write_text
from ..util.time import utc_now_iso
from .broker import Broker, turn_meta
from .sinks import WrapperLink

logger = logging.getLogger(__name__)

# Request lines carry base64 turn content, so the cap follows max_turn_bytes.
_LINE_OVERHEAD = 1_000_000
REQUEST_READ_TIMEOUT_S = 30.0
TICK_INTERVAL_S = 0.1


@dataclass
class DaemonPaths:
    home: Path

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def sock_path(self) -> Path:
        return self.daemon_dir / "turnrelayd.sock"

    @property
    def pid_path(self) -> Path:
        return self.daemon_dir / "turnrelayd.pid"

    @property
    def log_path(self) -> Path:
        return self.daemon_dir / "turnrelayd.log"


def default_paths() -> DaemonPaths:
    return DaemonPaths(home=ensure_home())


def line_limit_for(max_turn_bytes: int) -> int:
    return (int(max_turn_bytes) * 4) // 3 + _LINE_OVERHEAD


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            s.sendall(b'{"op":"ping"}\n')
            _ = s.recv(1024)
            return True
    except OSError:
        return False


def _write_pid(pid_path: Path) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(pid_path, str(os.getpid()) + "\n")


def _remove_stale_socket(sock_path: Path) -> None:
    try:
        if sock_path.exists() and not _is_socket_alive(sock_path):
            sock_path.unlink()
    except OSError:
        pass


def _recv_line(conn: socket.socket, *, limit: int) -> Tuple[bytes, bytes]:
    """Read one newline-terminated line; returns (line, bytes read past it)."""
    buf = b""
    while b"\n" not in buf:
        chunk = conn.recv(65536)
        if not chunk:
            break
        buf += chunk
        if len(buf) > limit:
            break
    line, _, rest = buf.partition(b"\n")
    return line, rest


def _recv_json_line(conn: socket.socket, *, limit: int = 2_000_000) -> Dict[str, Any]:
    line, _ = _recv_line(conn, limit=limit)
    try:
        obj = json.loads(line.decode("utf-8", errors="replace"))
    except ValueError:
        return {}
    return obj if isinstance(obj, dict) else {}


def _send_json(conn: socket.socket, obj: Dict[str, Any]) -> None:
    data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
    conn.sendall(data)


def _error(code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> DaemonResponse:
    return DaemonResponse(ok=False, error=DaemonError(code=code, message=message, details=(details or {})))


def _relay_error(e: RelayError) -> DaemonResponse:
    return _error(e.code, e.message, details=e.details)


def _arg_str(args: Dict[str, Any], key: str) -> str:
    v = str(args.get(key) or "").strip()
    if not v:
        raise InvalidArgs(f"missing {key}", details={"arg": key})
    return v


def _arg_int(args: Dict[str, Any], key: str, default: int = 0) -> int:
    v = args.get(key)
    if v is None or v == "":
        return default
    if isinstance(v, bool):
        raise InvalidArgs(f"{key} must be an integer", details={"arg": key})
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise InvalidArgs(f"{key} must be an integer", details={"arg": key}) from e


def _arg_float(args: Dict[str, Any], key: str, default: float) -> float:
    v = args.get(key)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except (TypeError, ValueError) as e:
        raise InvalidArgs(f"{key} must be a number", details={"arg": key}) from e


def _arg_b64(args: Dict[str, Any], key: str) -> bytes:
    raw = args.get(key)
    if not isinstance(raw, str):
        raise InvalidArgs(f"missing {key}", details={"arg": key})
    try:
        return base64.b64decode(raw.encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidArgs(f"{key} is not valid base64", details={"arg": key}) from e


def _arg_command(args: Dict[str, Any]) -> List[str]:
    cmd = args.get("command")
    if cmd is None:
        return []
    if not isinstance(cmd, list):
        raise InvalidArgs("command must be a list", details={"arg": "command"})
    return [str(x) for x in cmd]


def _register(broker: Broker, args: Dict[str, Any], *, link: Optional[WrapperLink] = None) -> DaemonResponse:
    detect = str(args.get("detect") or "local").strip().lower()
    if detect not in ("local", "broker"):
        raise InvalidArgs(f"unknown detect mode: {detect}", details={"arg": "detect"})
    require_input = args.get("require_input")
    info = broker.register_session(
        str(args.get("session_id") or "").strip() or None,
        pid=_arg_int(args, "pid"),
        child_pid=_arg_int(args, "child_pid"),
        command=_arg_command(args),
        link=link,
        broker_detect=(detect == "broker"),
        require_input=None if require_input is None else coerce_bool(require_input),
    )
    return DaemonResponse(ok=True, result={"session": info.model_dump()})


def handle_request(req: DaemonRequest, broker: Broker) -> Tuple[DaemonResponse, bool]:
    op = str(req.op or "").strip()
    args = req.args or {}
    try:
        return _dispatch(op, args, broker)
    except RelayError as e:
        logger.debug("request failed: %s", e.code, extra={"op": op})
        return _relay_error(e), False
    except Exception as e:
        logger.exception("internal error", extra={"op": op})
        return _error("internal_error", "internal error", details={"error": str(e)}), False


def _dispatch(op: str, args: Dict[str, Any], broker: Broker) -> Tuple[DaemonResponse, bool]:
    if op == "ping":
        return DaemonResponse(ok=True, result={"version": __version__, "pid": os.getpid(), "ts": utc_now_iso()}), False

    if op == "status":
        st = broker.status()
        st["pid"] = os.getpid()
        return DaemonResponse(ok=True, result=st), False

    if op == "shutdown":
        return DaemonResponse(ok=True, result={"message": "shutting down"}), True

    if op == "list_sessions":
        return DaemonResponse(ok=True, result={"sessions": [i.model_dump() for i in broker.list_sessions()]}), False

    if op == "list_turns":
        session_id = _arg_str(args, "session_id")
        limit = args.get("limit")
        turns = broker.list_turns(session_id, None if limit is None else _arg_int(args, "limit"))
        return DaemonResponse(ok=True, result={"turns": [turn_meta(t).model_dump() for t in turns]}), False

    if op == "get_turn":
        turn = broker.get_turn(_arg_str(args, "turn_id"))
        result: Dict[str, Any] = {"turn": turn_meta(turn).model_dump()}
        if not coerce_bool(args.get("metadata_only"), default=False):
            result["content_b64"] = base64.b64encode(turn.content).decode("ascii")
        return DaemonResponse(ok=True, result=result), False

    if op == "capture":
        turn = broker.capture(_arg_str(args, "session_id"))
        return DaemonResponse(ok=True, result={"turn": turn_meta(turn).model_dump()}), False

    if op == "capture_by_id":
        turn = broker.capture_by_id(_arg_str(args, "turn_id"))
        return DaemonResponse(ok=True, result={"turn": turn_meta(turn).model_dump()}), False

    if op == "paste":
        session_id = _arg_str(args, "session_id")
        turn = broker.paste(session_id)
        return DaemonResponse(ok=True, result={"turn": turn_meta(turn).model_dump(), "sink": f"inject:{session_id}"}), False

    if op == "deliver":
        raw = args.get("sink")
        if not isinstance(raw, dict):
            raise InvalidArgs("missing sink", details={"arg": "sink"})
        try:
            spec = SinkSpec.model_validate(raw)
        except ValidationError as e:
            raise InvalidArgs("invalid sink", details={"error": str(e)}) from e
        turn = broker.deliver(spec)
        return DaemonResponse(ok=True, result={"turn": turn_meta(turn).model_dump(), "sink": spec.label()}), False

    if op == "wrap_register":
        return _register(broker, args), False

    if op == "wrap_unregister":
        info = broker.unregister_session(_arg_str(args, "session_id"))
        return DaemonResponse(ok=True, result={"session": info.model_dump() if info is not None else None}), False

    if op == "report_turn":
        session_id = _arg_str(args, "session_id")
        content = _arg_b64(args, "content_b64")
        completed_at = _arg_float(args, "completed_at", 0.0)
        boundary = TurnBoundary(
            content=content,
            started_at=_arg_float(args, "started_at", completed_at),
            completed_at=completed_at,
            byte_length=max(_arg_int(args, "byte_length", len(content)), len(content)),
            truncated=coerce_bool(args.get("truncated"), default=False),
            interrupted=coerce_bool(args.get("interrupted"), default=False),
        )
        turn = broker.report_turn(session_id, boundary)
        return DaemonResponse(ok=True, result={"turn_id": turn.turn_id, "turn": turn_meta(turn).model_dump()}), False

    if op == "feed_output":
        turns = broker.feed_output(_arg_str(args, "session_id"), _arg_b64(args, "content_b64"))
        return DaemonResponse(ok=True, result={"turn_ids": [t.turn_id for t in turns]}), False

    if op == "session_signal":
        turns = broker.signal_session(_arg_str(args, "session_id"), _arg_str(args, "signal"))
        return DaemonResponse(ok=True, result={"turn_ids": [t.turn_id for t in turns]}), False

    return _error("unknown_op", f"unknown op: {op}"), False


def _serve_link(conn: socket.socket, broker: Broker, args: Dict[str, Any], stop_event: threading.Event) -> None:
    link = WrapperLink(conn, send_timeout_s=broker.settings.sinks.delivery_timeout_s)
    try:
        resp = _register(broker, args, link=link)
    except RelayError as e:
        resp = _relay_error(e)
    except Exception as e:
        logger.exception("internal error", extra={"op": "wrap_register"})
        resp = _error("internal_error", "internal error", details={"error": str(e)})
    try:
        _send_json(conn, resp.model_dump())
    except OSError:
        pass
    if not resp.ok:
        link.close()
        return
    session_id = str(resp.result["session"]["session_id"])
    try:
        # The wrapper never writes on its link; EOF means it is gone.
        while not stop_event.is_set() and not link.closed:
            try:
                r, _, _ = select.select([conn], [], [], 1.0)
            except (OSError, ValueError):
                break
            if not r:
                continue
            try:
                chunk = conn.recv(4096)
            except OSError:
                break
            if not chunk:
                break
    finally:
        broker.unregister_session(session_id, link=link)
        link.close()
        logger.info("wrapper link closed", extra={"op": "wrap_link", "session_id": session_id})


def _handle_conn(conn: socket.socket, broker: Broker, stop_event: threading.Event) -> None:
    keep_open = False
    try:
        conn.settimeout(REQUEST_READ_TIMEOUT_S)
        try:
            raw = _recv_json_line(conn, limit=line_limit_for(broker.max_turn_bytes))
        except OSError:
            return
        try:
            req = DaemonRequest.model_validate(raw)
        except ValidationError as e:
            resp = _error("invalid_request", "invalid request", details={"error": str(e)})
            try:
                _send_json(conn, resp.model_dump())
            except OSError:
                pass
            return

        args = req.args or {}
        if req.op == "wrap_register" and coerce_bool(args.get("attach"), default=False):
            keep_open = True
            _serve_link(conn, broker, args, stop_event)
            return

        resp, should_exit = handle_request(req, broker)
        if should_exit:
            stop_event.set()
        try:
            _send_json(conn, resp.model_dump())
        except OSError:
            # Client disconnected before response was sent - not an error
            pass
    finally:
        if not keep_open:
            try:
                conn.close()
            except OSError:
                pass


def serve_forever(
    paths: Optional[DaemonPaths] = None,
    *,
    broker: Optional[Broker] = None,
    stop_event: Optional[threading.Event] = None,
    ready_event: Optional[threading.Event] = None,
) -> int:
    p = paths or default_paths()
    p.daemon_dir.mkdir(parents=True, exist_ok=True)
    b = broker or Broker()

    _remove_stale_socket(p.sock_path)
    if p.sock_path.exists() and _is_socket_alive(p.sock_path):
        logger.info("daemon already running", extra={"op": "serve"})
        return 0

    try:
        if p.sock_path.exists():
            p.sock_path.unlink()
    except OSError:
        pass

    stop = stop_event or threading.Event()

    # Graceful shutdown on SIGTERM/SIGINT (signal handlers only work in the main thread).
    if threading.current_thread() is threading.main_thread():

        def _signal_handler(signum: int, frame: Any) -> None:
            stop.set()

        signal.signal(signal.SIGTERM, _signal_handler)
        signal.signal(signal.SIGINT, _signal_handler)

    def _tick_loop() -> None:
        while not stop.is_set():
            try:
                b.tick()
            except Exception:
                logger.exception("tick failed", extra={"op": "tick"})
            stop.wait(TICK_INTERVAL_S)

    threading.Thread(target=_tick_loop, name="turnrelay-tick", daemon=True).start()

    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.bind(str(p.sock_path))
        s.listen(50)
        s.settimeout(1.0)  # Allow periodic check of stop_event
        _write_pid(p.pid_path)
        logger.info("listening on %s", p.sock_path, extra={"op": "serve"})
        if ready_event is not None:
            ready_event.set()

        while not stop.is_set():
            try:
                conn, _ = s.accept()
            except socket.timeout:
                continue
            except OSError:
                continue
            threading.Thread(target=_handle_conn, args=(conn, b, stop), name="turnrelay-conn", daemon=True).start()

    stop.set()
    b.close_all()
    logger.info("stopped", extra={"op": "serve"})

    try:
        if p.sock_path.exists():
            p.sock_path.unlink()
    except OSError:
        pass
    try:
        if p.pid_path.exists():
            p.pid_path.unlink()
    except OSError:
        pass
    return 0


def _unavailable() -> Dict[str, Any]:
    return DaemonResponse(ok=False, error=DaemonError(code="daemon_unavailable", message="daemon unavailable")).model_dump()


def call_daemon(req: Dict[str, Any], *, paths: Optional[DaemonPaths] = None, timeout_s: float = 60.0) -> Dict[str, Any]:
    p = paths or default_paths()
    try:
        request = DaemonRequest.model_validate(req)
    except ValidationError as e:
        return _error("invalid_request", "invalid request", details={"error": str(e)}).model_dump()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(p.sock_path))
            _send_json(s, request.model_dump())
            obj = _recv_json_line(s, limit=line_limit_for(1 << 30))
        resp = DaemonResponse.model_validate(obj)
        return resp.model_dump()
    except (OSError, ValidationError):
        return _unavailable()


def open_wrapper_link(
    args: Dict[str, Any],
    *,
    paths: Optional[DaemonPaths] = None,
    timeout_s: float = 5.0,
) -> Tuple[Optional[socket.socket], Dict[str, Any], bytes]:
    """Register a wrapper and keep the connection as its inject link.

    Returns (socket or None, response, bytes already read past the response).
    """
    p = paths or default_paths()
    req = DaemonRequest(op="wrap_register", args=dict(args, attach=True))
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        s.settimeout(timeout_s)
        s.connect(str(p.sock_path))
        _send_json(s, req.model_dump())
        line, rest = _recv_line(s, limit=_LINE_OVERHEAD)
        resp = DaemonResponse.model_validate(json.loads(line.decode("utf-8", errors="replace")))
    except (OSError, ValueError, ValidationError):
        s.close()
        return None, _unavailable(), b""
    if not resp.ok:
        s.close()
        return None, resp.model_dump(), b""
    s.settimeout(None)
    return s, resp.model_dump(), rest


def read_pid(paths: Optional[DaemonPaths] = None) -> int:
    p = paths or default_paths()
    try:
        txt = p.pid_path.read_text(encoding="utf-8").strip()
        return int(txt) if txt.isdigit() else 0
    except OSError:
        return 0
