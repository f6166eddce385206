from __future__ import annotations

import argparse
import base64
import binascii
import json
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .daemon.server import call_daemon
from .errors import ConfigError
from .hotkey import ACTIONS, run_action
from .kernel.settings import detector_config, get_settings, save_settings
from .paths import settings_path, wrap_log_path
from .runners.pty import BrokerLink, WrappedSession
from .util.obslog import setup_root_json_logging

EXIT_OK = 0
EXIT_UNAVAILABLE = 1
EXIT_ERROR = 2


def _print_json(obj: Any, *, stream: Any = None) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2), file=stream or sys.stdout)


def _exit_code(resp: Dict[str, Any]) -> int:
    if resp.get("ok"):
        return EXIT_OK
    code = str((resp.get("error") or {}).get("code") or "")
    return EXIT_UNAVAILABLE if code == "daemon_unavailable" else EXIT_ERROR


def _fail(code: str, message: str, **details: Any) -> int:
    _print_json({"ok": False, "error": {"code": code, "message": message, "details": details}})
    return EXIT_ERROR


def _ensure_daemon_running() -> bool:
    resp = call_daemon({"op": "ping"})
    if resp.get("ok"):
        return True

    try:
        subprocess.run(
            [sys.executable, "-m", "turnrelay.daemon_main", "start"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        return False

    for _ in range(30):
        time.sleep(0.05)
        resp = call_daemon({"op": "ping"})
        if resp.get("ok"):
            return True
    return False


def _call_and_print(op: str, args: Optional[Dict[str, Any]] = None) -> int:
    resp = call_daemon({"op": op, "args": args or {}})
    _print_json(resp)
    return _exit_code(resp)


def cmd_wrap(args: argparse.Namespace) -> int:
    command: List[str] = list(args.command or [])
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        return _fail("invalid_args", "missing command (usage: turnrelay wrap [--session ID] -- CMD...)")
    try:
        settings = get_settings()
        config = detector_config(settings)
    except ConfigError as e:
        return _fail(e.code, e.message, **e.details)

    session_id = str(args.session or "").strip()
    setup_root_json_logging(
        component="turnrelay-wrap",
        level=settings.log_level,
        path=wrap_log_path(session_id),
    )

    link: Optional[BrokerLink] = None
    if not args.standalone:
        if _ensure_daemon_running() and session_id:
            resp = call_daemon({"op": "list_sessions"})
            for s in (resp.get("result") or {}).get("sessions") or []:
                if s.get("session_id") == session_id and s.get("status") == "active":
                    return _fail("duplicate_session", f"session already active: {session_id}", session_id=session_id)
        link = BrokerLink(
            session_id=session_id or None,
            command=command,
            detect=str(args.detect or settings.wrap.detect),
            require_input=config.require_input,
        )

    wrapped = WrappedSession(
        command,
        link=link,
        detector_config=config,
        bracketed_paste=settings.wrap.bracketed_paste,
    )
    try:
        return wrapped.run()
    except OSError as e:
        print(f"turnrelay: cannot run {command[0]}: {e}", file=sys.stderr)
        return 127


def cmd_list_sessions(args: argparse.Namespace) -> int:
    return _call_and_print("list_sessions")


def cmd_list_turns(args: argparse.Namespace) -> int:
    a: Dict[str, Any] = {"session_id": args.session_id}
    if args.limit is not None:
        a["limit"] = int(args.limit)
    return _call_and_print("list_turns", a)


def cmd_get_turn(args: argparse.Namespace) -> int:
    resp = call_daemon({"op": "get_turn", "args": {"turn_id": args.turn_id, "metadata_only": bool(args.metadata_only)}})
    if not resp.get("ok") or args.metadata_only:
        _print_json(resp)
        return _exit_code(resp)
    result = dict(resp.get("result") or {})
    try:
        content = base64.b64decode(str(result.pop("content_b64", "") or "").encode("ascii"), validate=True)
    except (binascii.Error, ValueError):
        return _fail("invalid_response", "daemon returned malformed content")
    # Metadata on stderr so stdout carries exactly the turn bytes.
    _print_json({"ok": True, "result": result}, stream=sys.stderr)
    out = sys.stdout.buffer
    out.write(content)
    out.flush()
    return EXIT_OK


def cmd_capture(args: argparse.Namespace) -> int:
    return _call_and_print("capture", {"session_id": args.session_id})


def cmd_capture_by_id(args: argparse.Namespace) -> int:
    return _call_and_print("capture_by_id", {"turn_id": args.turn_id})


def cmd_paste(args: argparse.Namespace) -> int:
    return _call_and_print("paste", {"session_id": args.session_id})


def cmd_deliver(args: argparse.Namespace) -> int:
    sink: Dict[str, Any] = {"kind": args.kind}
    if args.kind == "file":
        if not str(args.path or "").strip():
            return _fail("invalid_args", "file sink requires --path")
        sink["path"] = str(Path(args.path).expanduser().resolve())
    elif args.kind == "inject":
        if not str(args.session or "").strip():
            return _fail("invalid_args", "inject sink requires --session")
        sink["session_id"] = str(args.session).strip()
    return _call_and_print("deliver", {"sink": sink})


def cmd_hotkey(args: argparse.Namespace) -> int:
    resp = run_action(args.action, session_id=str(args.session or ""), window_pid=args.window_pid)
    _print_json(resp)
    return _exit_code(resp)


def cmd_status(args: argparse.Namespace) -> int:
    return _call_and_print("status")


def cmd_daemon(args: argparse.Namespace) -> int:
    from .daemon_main import main as daemon_main

    return int(daemon_main([args.action]))


def cmd_config(args: argparse.Namespace) -> int:
    try:
        settings = get_settings()
    except ConfigError as e:
        return _fail(e.code, e.message, **e.details)
    path = settings_path()
    if args.action == "init":
        if path.exists() and not args.force:
            return _fail("invalid_args", f"settings file exists: {path} (use --force)", path=str(path))
        save_settings(settings.to_dict())
    _print_json({"ok": True, "result": {"path": str(path), "settings": settings.to_dict()}})
    return EXIT_OK


def cmd_version(args: argparse.Namespace) -> int:
    print(__version__)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="turnrelay", description="Capture and relay agent turns between terminal sessions")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_wrap = sub.add_parser("wrap", help="Run a command on a PTY and record its turns")
    p_wrap.add_argument("--session", default="", help="Session id (default: assigned by the broker)")
    p_wrap.add_argument("--detect", choices=["local", "broker"], default=None, help="Where turn detection runs")
    p_wrap.add_argument("--standalone", action="store_true", help="Do not contact the broker")
    p_wrap.add_argument("command", nargs=argparse.REMAINDER, help="Command to run (after --)")
    p_wrap.set_defaults(func=cmd_wrap)

    p_sessions = sub.add_parser("list-sessions", help="List known sessions")
    p_sessions.set_defaults(func=cmd_list_sessions)

    p_turns = sub.add_parser("list-turns", help="List a session's retained turns (newest first)")
    p_turns.add_argument("session_id", help="Target session id")
    p_turns.add_argument("--limit", type=int, default=None, help="Maximum number of turns")
    p_turns.set_defaults(func=cmd_list_turns)

    p_get = sub.add_parser("get-turn", help="Print a turn's content to stdout (metadata to stderr)")
    p_get.add_argument("turn_id", help="Turn id (<session>:<seq>)")
    p_get.add_argument("--metadata-only", action="store_true", help="Print only metadata JSON to stdout")
    p_get.set_defaults(func=cmd_get_turn)

    p_capture = sub.add_parser("capture", help="Capture a session's latest turn into the relay buffer")
    p_capture.add_argument("session_id", help="Source session id")
    p_capture.set_defaults(func=cmd_capture)

    p_capture_id = sub.add_parser("capture-by-id", help="Capture a specific turn into the relay buffer")
    p_capture_id.add_argument("turn_id", help="Turn id (<session>:<seq>)")
    p_capture_id.set_defaults(func=cmd_capture_by_id)

    p_paste = sub.add_parser("paste", help="Inject the relay buffer into a session")
    p_paste.add_argument("session_id", help="Target session id")
    p_paste.set_defaults(func=cmd_paste)

    p_deliver = sub.add_parser("deliver", help="Deliver the relay buffer to a sink")
    p_deliver.add_argument("kind", choices=["clipboard", "file", "inject"], help="Sink kind")
    p_deliver.add_argument("--path", default="", help="Target file (file sink)")
    p_deliver.add_argument("--session", default="", help="Target session (inject sink)")
    p_deliver.set_defaults(func=cmd_deliver)

    p_hotkey = sub.add_parser("hotkey", help="Run a hotkey action against the focused session")
    p_hotkey.add_argument("action", choices=list(ACTIONS), help="Action")
    p_hotkey.add_argument("--session", default="", help="Session id (default: resolve from the focused window)")
    p_hotkey.add_argument("--window-pid", type=int, default=None, help="Focused window pid (default: xdotool)")
    p_hotkey.set_defaults(func=cmd_hotkey)

    p_status = sub.add_parser("status", help="Broker status")
    p_status.set_defaults(func=cmd_status)

    p_daemon = sub.add_parser("daemon", help="Manage the broker daemon")
    p_daemon.add_argument("action", choices=["start", "stop", "status"], help="Action")
    p_daemon.set_defaults(func=cmd_daemon)

    p_config = sub.add_parser("config", help="Show the effective settings or write them to settings.yaml")
    p_config.add_argument("action", choices=["show", "init"], help="Action")
    p_config.add_argument("--force", action="store_true", help="Overwrite an existing settings file (init)")
    p_config.set_defaults(func=cmd_config)

    p_version = sub.add_parser("version", help="Show version")
    p_version.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
