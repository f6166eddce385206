"""The broker: sole owner of sessions, their turn registries and the relay buffer.

Locking:
- `_lock` guards the session table, every registry and broker-hosted detectors.
- `_relay_lock` guards the relay buffer and the last delivery record.
Sink I/O (clipboard tools, file writes, wrapper links) runs with neither held.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from .. import __version__
from ..contracts.v1 import SessionInfo, SinkSpec, TurnMeta
from ..errors import DuplicateSession, InvalidArgs, RelayError, SessionNotFound, SinkDeliveryFailed, TurnNotFound
from ..kernel.detector import TurnBoundary, TurnDetector
from ..kernel.registry import SessionRegistry, Turn, parse_turn_id
from ..kernel.relay import RelayBuffer
from ..kernel.settings import RelaySettings, detector_config
from ..util.time import utc_iso_from_epoch
from .sinks import InjectSink, Sink, WrapperLink, build_sink

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{0,127}$")

SESSION_SIGNALS = ("input", "reset")


@dataclass
class _Session:
    session_id: str
    registry: SessionRegistry
    created_at: float
    status: str = "active"
    closed_at: Optional[float] = None
    pid: int = 0
    child_pid: int = 0
    command: List[str] = field(default_factory=list)
    link: Optional[WrapperLink] = None
    detector: Optional[TurnDetector] = None

    def info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            status="active" if self.status == "active" else "closed",
            created_at=utc_iso_from_epoch(self.created_at),
            closed_at=utc_iso_from_epoch(self.closed_at) if self.closed_at is not None else None,
            pid=self.pid,
            child_pid=self.child_pid,
            command=list(self.command),
            has_turn=len(self.registry) > 0,
            turn_count=len(self.registry),
            next_seq=self.registry.next_seq,
        )


def turn_meta(turn: Turn) -> TurnMeta:
    return TurnMeta(
        turn_id=turn.turn_id,
        session_id=turn.session_id,
        started_at=utc_iso_from_epoch(turn.started_at),
        completed_at=utc_iso_from_epoch(turn.completed_at),
        byte_length=turn.byte_length,
        truncated=turn.truncated,
        interrupted=turn.interrupted,
    )


class Broker:
    def __init__(self, settings: Optional[RelaySettings] = None) -> None:
        self._settings = settings or RelaySettings()
        # Validate once so a bad config fails at startup, not on first feed.
        detector_config(self._settings)
        self._lock = threading.Lock()
        self._relay_lock = threading.Lock()
        self._sessions: Dict[str, _Session] = {}
        self._closed_order: List[str] = []
        self._auto_seq = 0
        # Next seq of evicted sessions, so a re-registered id never reissues a turn id.
        self._retired_seq: Dict[str, int] = {}
        self._relay = RelayBuffer()
        self._last_delivery: Optional[Dict[str, Any]] = None
        self._started_at = time.time()

    @property
    def settings(self) -> RelaySettings:
        return self._settings

    @property
    def max_turn_bytes(self) -> int:
        return int(self._settings.detector.max_turn_bytes)

    # -- sessions ---------------------------------------------------------

    def register_session(
        self,
        session_id: Optional[str] = None,
        *,
        pid: int = 0,
        child_pid: int = 0,
        command: Sequence[str] = (),
        link: Optional[WrapperLink] = None,
        broker_detect: bool = False,
        require_input: Optional[bool] = None,
    ) -> SessionInfo:
        sid = str(session_id or "").strip()
        if sid and not _SESSION_ID_RE.match(sid):
            raise InvalidArgs(f"invalid session id: {sid!r}", details={"session_id": sid})
        detector: Optional[TurnDetector] = None
        if broker_detect:
            detector = TurnDetector(detector_config(self._settings, require_input=require_input))
        with self._lock:
            if not sid:
                sid = self._next_auto_id_locked()
            s = self._sessions.get(sid)
            if s is not None and s.status == "active":
                raise DuplicateSession(sid)
            if s is not None:
                # A reconnecting wrapper resumes its closed session; seq keeps counting.
                s.status = "active"
                s.closed_at = None
                try:
                    self._closed_order.remove(sid)
                except ValueError:
                    pass
            else:
                s = _Session(
                    session_id=sid,
                    registry=SessionRegistry(
                        sid,
                        capacity=self._settings.registry.ring_depth,
                        next_seq=self._retired_seq.pop(sid, 1),
                    ),
                    created_at=time.time(),
                )
                self._sessions[sid] = s
            s.pid = int(pid or 0)
            s.child_pid = int(child_pid or 0)
            s.command = [str(x) for x in command]
            s.link = link
            s.detector = detector
            info = s.info()
        logger.info("session registered", extra={"op": "register_session", "session_id": sid, "pid": pid})
        return info

    def _next_auto_id_locked(self) -> str:
        while True:
            self._auto_seq += 1
            sid = f"s{self._auto_seq}"
            if sid not in self._sessions and sid not in self._retired_seq:
                return sid

    def unregister_session(
        self,
        session_id: str,
        *,
        link: Optional[WrapperLink] = None,
        now: Optional[float] = None,
    ) -> Optional[SessionInfo]:
        """Mark a session closed. Idempotent; unknown ids are ignored.

        With `link`, only closes the session if that link is still its current
        one (a reconnected wrapper must not be closed by its old link's EOF).
        """
        sid = str(session_id or "").strip()
        t = time.time() if now is None else float(now)
        old_link: Optional[WrapperLink] = None
        with self._lock:
            s = self._sessions.get(sid)
            if s is None:
                return None
            if link is not None and s.link is not link:
                return s.info()
            if s.status != "active":
                return s.info()
            if s.detector is not None:
                for b in s.detector.close(t):
                    s.registry.append(self._cap_boundary(b))
                s.detector = None
            old_link = s.link
            s.link = None
            s.status = "closed"
            s.closed_at = t
            self._closed_order.append(sid)
            self._evict_closed_locked()
            info = s.info()
        if old_link is not None and old_link is not link:
            old_link.close()
        logger.info("session closed", extra={"op": "unregister_session", "session_id": sid})
        return info

    def _evict_closed_locked(self) -> None:
        limit = int(self._settings.registry.max_closed_sessions)
        while len(self._closed_order) > limit:
            sid = self._closed_order.pop(0)
            s = self._sessions.pop(sid, None)
            if s is not None:
                self._retired_seq[sid] = s.registry.next_seq
            logger.info("closed session evicted", extra={"op": "evict", "session_id": sid})

    def list_sessions(self) -> List[SessionInfo]:
        with self._lock:
            sessions = sorted(self._sessions.values(), key=lambda s: s.created_at)
            return [s.info() for s in sessions]

    def _session_locked(self, session_id: str) -> _Session:
        sid = str(session_id or "").strip()
        s = self._sessions.get(sid)
        if s is None:
            raise SessionNotFound(sid)
        return s

    # -- turns ------------------------------------------------------------

    def _cap_boundary(self, boundary: TurnBoundary) -> TurnBoundary:
        limit = self.max_turn_bytes
        content = bytes(boundary.content)
        byte_length = max(int(boundary.byte_length), len(content))
        if len(content) <= limit:
            if byte_length == boundary.byte_length:
                return boundary
            return replace(boundary, byte_length=byte_length)
        return replace(boundary, content=content[:limit], byte_length=byte_length, truncated=True)

    def report_turn(self, session_id: str, boundary: TurnBoundary) -> Turn:
        """The single write path into a session registry.

        Reports for a closed (but not yet evicted) session are accepted: the
        final interrupted turn of a wrapper races its own disconnect.
        """
        if int(boundary.byte_length) <= 0 and not boundary.content:
            raise InvalidArgs("empty turn", details={"session_id": session_id})
        b = self._cap_boundary(boundary)
        with self._lock:
            s = self._session_locked(session_id)
            turn = s.registry.append(b)
        logger.info(
            "turn recorded bytes=%d truncated=%s interrupted=%s",
            turn.byte_length,
            turn.truncated,
            turn.interrupted,
            extra={"op": "report_turn", "session_id": turn.session_id, "turn_id": turn.turn_id},
        )
        return turn

    def list_turns(self, session_id: str, limit: Optional[int] = None) -> List[Turn]:
        if limit is not None and int(limit) < 0:
            raise InvalidArgs("limit must be >= 0", details={"limit": limit})
        with self._lock:
            s = self._session_locked(session_id)
            return list(s.registry.list(limit))

    def get_turn(self, turn_id: str) -> Turn:
        sid, _ = parse_turn_id(turn_id)
        with self._lock:
            s = self._sessions.get(sid)
            if s is None:
                raise TurnNotFound(str(turn_id))
            return s.registry.get(turn_id)

    def feed_output(self, session_id: str, data: bytes, *, now: Optional[float] = None) -> List[Turn]:
        t = time.time() if now is None else float(now)
        with self._lock:
            s = self._session_locked(session_id)
            if s.detector is None:
                raise InvalidArgs(
                    "session does not use broker-side detection",
                    details={"session_id": s.session_id},
                )
            return [s.registry.append(self._cap_boundary(b)) for b in s.detector.feed(data, t)]

    def signal_session(self, session_id: str, signal: str, *, now: Optional[float] = None) -> List[Turn]:
        """Forward a wrapper lifecycle signal (`input` or `reset`) to a broker-hosted detector."""
        t = time.time() if now is None else float(now)
        if signal not in SESSION_SIGNALS:
            raise InvalidArgs(f"unknown session signal: {signal}", details={"signal": signal})
        with self._lock:
            s = self._session_locked(session_id)
            if s.detector is None:
                raise InvalidArgs(
                    "session does not use broker-side detection",
                    details={"session_id": s.session_id},
                )
            bs = s.detector.notify_input(t) if signal == "input" else s.detector.reset(t)
            return [s.registry.append(self._cap_boundary(b)) for b in bs]

    def tick(self, *, now: Optional[float] = None) -> List[Turn]:
        t = time.time() if now is None else float(now)
        out: List[Turn] = []
        with self._lock:
            for s in self._sessions.values():
                if s.detector is None:
                    continue
                for b in s.detector.tick(t):
                    out.append(s.registry.append(self._cap_boundary(b)))
        for turn in out:
            logger.info("turn detected", extra={"op": "tick", "session_id": turn.session_id, "turn_id": turn.turn_id})
        return out

    # -- relay ------------------------------------------------------------

    def capture(self, session_id: str) -> Turn:
        # Lock order is always _lock then _relay_lock.
        with self._lock:
            turn = self._session_locked(session_id).registry.latest()
            with self._relay_lock:
                self._relay.replace(turn)
        logger.info("captured", extra={"op": "capture", "session_id": turn.session_id, "turn_id": turn.turn_id})
        return turn

    def capture_by_id(self, turn_id: str) -> Turn:
        sid, _ = parse_turn_id(turn_id)
        with self._lock:
            s = self._sessions.get(sid)
            if s is None:
                raise TurnNotFound(str(turn_id))
            turn = s.registry.get(turn_id)
            with self._relay_lock:
                self._relay.replace(turn)
        logger.info("captured", extra={"op": "capture_by_id", "session_id": turn.session_id, "turn_id": turn.turn_id})
        return turn

    def relay_turn(self) -> Turn:
        with self._relay_lock:
            return self._relay.get()

    def inject_sink(self, session_id: str) -> InjectSink:
        with self._lock:
            s = self._session_locked(session_id)
            if s.status != "active":
                raise SinkDeliveryFailed(f"inject:{s.session_id}", "session is closed", details={"session_id": s.session_id})
            return InjectSink(s.session_id, s.link)

    def paste(self, session_id: str) -> Turn:
        """Inject the relay buffer content into a session. The buffer is left as is."""
        turn = self.relay_turn()
        sink = self.inject_sink(session_id)
        self._deliver_to(sink, turn)
        return turn

    def deliver(self, spec: SinkSpec) -> Turn:
        turn = self.relay_turn()
        sink = build_sink(spec, self)
        self._deliver_to(sink, turn)
        return turn

    def _deliver_to(self, sink: Sink, turn: Turn) -> None:
        try:
            sink.deliver(turn.content, turn)
        except RelayError as e:
            self._record_delivery(sink.label, turn, ok=False, error=e.message)
            logger.warning("delivery failed: %s", e.message, extra={"op": "deliver", "sink": sink.label, "turn_id": turn.turn_id})
            raise
        self._record_delivery(sink.label, turn, ok=True)
        logger.info("delivered", extra={"op": "deliver", "sink": sink.label, "turn_id": turn.turn_id})

    def _record_delivery(self, sink: str, turn: Turn, *, ok: bool, error: str = "") -> None:
        rec: Dict[str, Any] = {
            "sink": sink,
            "turn_id": turn.turn_id,
            "ok": bool(ok),
            "at": utc_iso_from_epoch(time.time()),
        }
        if error:
            rec["error"] = error
        with self._relay_lock:
            self._last_delivery = rec

    # -- lifecycle --------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        with self._lock:
            active = sum(1 for s in self._sessions.values() if s.status == "active")
            closed = len(self._sessions) - active
            turns = sum(len(s.registry) for s in self._sessions.values())
        with self._relay_lock:
            relay = self._relay.peek()
            last = dict(self._last_delivery) if self._last_delivery else None
        return {
            "version": __version__,
            "started_at": utc_iso_from_epoch(self._started_at),
            "sessions_active": active,
            "sessions_closed": closed,
            "turns_retained": turns,
            "relay_turn_id": relay.turn_id if relay is not None else None,
            "last_delivery": last,
            "ring_depth": int(self._settings.registry.ring_depth),
            "max_turn_bytes": self.max_turn_bytes,
        }

    def close_all(self) -> None:
        with self._lock:
            active = [sid for sid, s in self._sessions.items() if s.status == "active"]
        for sid in active:
            self.unregister_session(sid)
