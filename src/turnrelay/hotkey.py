"""Hotkey actions and focused-session resolution.

Global key grabs live in the operator's hotkey daemon, bound to
`turnrelay hotkey <action>`. This module maps the focused window to a wrapped
session and runs the action against the broker.
"""
from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .daemon.server import DaemonPaths, call_daemon
from .errors import FocusUnresolved

ACTIONS = ("capture", "paste", "clipboard")

_MAX_ANCESTRY_DEPTH = 64


def active_window_pid(*, timeout_s: float = 2.0) -> Optional[int]:
    if shutil.which("xdotool") is None:
        return None
    try:
        out = subprocess.run(
            ["xdotool", "getactivewindow", "getwindowpid"],
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout_s,
        ).stdout
    except (OSError, subprocess.SubprocessError):
        return None
    s = out.strip()
    return int(s) if s.isdigit() else None


def parent_pid(pid: int, *, proc_root: Path = Path("/proc")) -> int:
    try:
        stat = (proc_root / str(int(pid)) / "stat").read_text(encoding="utf-8", errors="replace")
    except OSError:
        return 0
    # The comm field may contain spaces and parens; fields resume after the last ')'.
    fields = stat.rsplit(")", 1)[-1].split()
    if len(fields) < 2 or not fields[1].isdigit():
        return 0
    return int(fields[1])


def process_ancestry(pid: int, *, proc_root: Path = Path("/proc")) -> List[int]:
    """`pid` followed by its ancestors, nearest first."""
    out: List[int] = []
    cur = int(pid)
    while cur > 0 and cur not in out and len(out) < _MAX_ANCESTRY_DEPTH:
        out.append(cur)
        cur = parent_pid(cur, proc_root=proc_root)
    return out


def resolve_focused_session(
    sessions: Mapping[str, Iterable[int]],
    window_pid: int,
    *,
    proc_root: Path = Path("/proc"),
) -> str:
    """Return the single session whose processes descend from (or are) `window_pid`."""
    matches: List[str] = []
    for session_id, pids in sessions.items():
        for pid in pids:
            if int(window_pid) in process_ancestry(pid, proc_root=proc_root):
                matches.append(session_id)
                break
    if not matches:
        raise FocusUnresolved(
            f"no active session belongs to window pid {window_pid}",
            details={"window_pid": int(window_pid)},
        )
    if len(matches) > 1:
        raise FocusUnresolved(
            f"window pid {window_pid} hosts several sessions; pass --session",
            details={"window_pid": int(window_pid), "candidates": sorted(matches)},
        )
    return matches[0]


def _active_session_pids(paths: Optional[DaemonPaths]) -> Dict[str, Any]:
    resp = call_daemon({"op": "list_sessions"}, paths=paths)
    if not resp.get("ok"):
        return resp
    out: Dict[str, List[int]] = {}
    for s in (resp.get("result") or {}).get("sessions") or []:
        if not isinstance(s, dict) or s.get("status") != "active":
            continue
        pids = [int(p) for p in (s.get("pid"), s.get("child_pid")) if isinstance(p, int) and p > 0]
        out[str(s.get("session_id"))] = pids
    return {"ok": True, "result": {"sessions": out}}


def resolve_session(
    *,
    session_id: str = "",
    window_pid: Optional[int] = None,
    paths: Optional[DaemonPaths] = None,
    proc_root: Path = Path("/proc"),
) -> Dict[str, Any]:
    """Resolve the target session; returns a response-shaped dict like call_daemon."""
    sid = str(session_id or "").strip()
    if sid:
        return {"ok": True, "result": {"session_id": sid}}
    wpid = window_pid if window_pid is not None else active_window_pid()
    if wpid is None:
        e = FocusUnresolved("cannot determine the focused window (install xdotool or pass --session)")
        return {"ok": False, "error": {"code": e.code, "message": e.message, "details": e.details}}
    listed = _active_session_pids(paths)
    if not listed.get("ok"):
        return listed
    try:
        sid = resolve_focused_session(listed["result"]["sessions"], int(wpid), proc_root=proc_root)
    except FocusUnresolved as e:
        return {"ok": False, "error": {"code": e.code, "message": e.message, "details": e.details}}
    return {"ok": True, "result": {"session_id": sid}}


def run_action(
    action: str,
    *,
    session_id: str = "",
    window_pid: Optional[int] = None,
    paths: Optional[DaemonPaths] = None,
) -> Dict[str, Any]:
    if action not in ACTIONS:
        return {"ok": False, "error": {"code": "invalid_args", "message": f"unknown hotkey action: {action}", "details": {}}}
    resolved = resolve_session(session_id=session_id, window_pid=window_pid, paths=paths)
    if not resolved.get("ok"):
        return resolved
    sid = resolved["result"]["session_id"]

    if action == "paste":
        return call_daemon({"op": "paste", "args": {"session_id": sid}}, paths=paths)

    resp = call_daemon({"op": "capture", "args": {"session_id": sid}}, paths=paths)
    if action == "capture" or not resp.get("ok"):
        return resp
    return call_daemon({"op": "deliver", "args": {"sink": {"kind": "clipboard"}}}, paths=paths)
