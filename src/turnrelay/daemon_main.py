from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .daemon.broker import Broker
from .daemon.server import DaemonPaths, call_daemon, default_paths, read_pid, serve_forever
from .errors import ConfigError
from .kernel.settings import RelaySettings, get_settings
from .util.obslog import setup_root_json_logging


def _spawn_daemon(paths: DaemonPaths, extra: Optional[List[str]] = None) -> int:
    paths.daemon_dir.mkdir(parents=True, exist_ok=True)
    log_f = paths.log_path.open("a", encoding="utf-8")
    env = os.environ.copy()
    env["TURNRELAY_HOME"] = str(paths.home)
    p = subprocess.Popen(
        [sys.executable, "-m", "turnrelay.daemon_main", "run", *(extra or [])],
        stdout=log_f,
        stderr=log_f,
        stdin=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        cwd=str(Path.cwd()),
    )
    return int(p.pid)


def _apply_overrides(settings: RelaySettings, args: argparse.Namespace) -> RelaySettings:
    if args.ring_depth is not None:
        settings = replace(settings, registry=replace(settings.registry, ring_depth=int(args.ring_depth)))
    if args.max_turn_bytes is not None:
        settings = replace(settings, detector=replace(settings.detector, max_turn_bytes=int(args.max_turn_bytes)))
    if args.log_level:
        settings = replace(settings, log_level=str(args.log_level).upper())
    return settings


def _override_argv(args: argparse.Namespace) -> List[str]:
    out: List[str] = []
    if args.ring_depth is not None:
        out += ["--ring-depth", str(args.ring_depth)]
    if args.max_turn_bytes is not None:
        out += ["--max-turn-bytes", str(args.max_turn_bytes)]
    if args.log_level:
        out += ["--log-level", str(args.log_level)]
    return out


def _positive_int(v: str) -> int:
    n = int(v)
    if n < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return n


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="turnrelayd", description="turnrelay broker daemon (single owner of turn state)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    for name, help_text in (("run", "Run daemon in foreground"), ("start", "Start daemon in background")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--ring-depth", type=_positive_int, default=None, help="Turns retained per session")
        p.add_argument("--max-turn-bytes", type=_positive_int, default=None, help="Per-turn content cap in bytes")
        p.add_argument("--log-level", default="", choices=["", "DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    sub.add_parser("stop", help="Stop daemon")
    sub.add_parser("status", help="Daemon status")

    args = parser.parse_args(argv)
    paths = default_paths()

    if args.cmd == "run":
        try:
            settings = _apply_overrides(get_settings(), args)
            broker = Broker(settings)
        except ConfigError as e:
            print(f"turnrelayd: {e.message}", file=sys.stderr)
            return 2
        setup_root_json_logging(component="turnrelayd", level=settings.log_level)
        return int(serve_forever(paths, broker=broker))

    if args.cmd == "start":
        resp = call_daemon({"op": "ping"}, paths=paths)
        if resp.get("ok"):
            print("turnrelayd: already running")
            return 0
        pid = _spawn_daemon(paths, _override_argv(args))
        print(f"turnrelayd: started pid={pid}")
        return 0

    if args.cmd == "stop":
        resp = call_daemon({"op": "shutdown"}, paths=paths)
        if resp.get("ok"):
            print("turnrelayd: shutdown requested")
            return 0
        pid = read_pid(paths)
        if pid > 0:
            try:
                os.kill(pid, signal.SIGTERM)
                print("turnrelayd: SIGTERM sent")
                return 0
            except OSError:
                pass
        print("turnrelayd: not running")
        return 0

    if args.cmd == "status":
        resp = call_daemon({"op": "ping"}, paths=paths)
        if resp.get("ok"):
            result = resp.get("result") or {}
            print(f"turnrelayd: running pid={result.get('pid')} version={result.get('version')}")
            return 0
        print("turnrelayd: not running")
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
