"""Timing-based turn boundary detection over a raw PTY byte stream.

A turn is a burst of output followed by a quiet period long enough to be
confirmed. The detector never looks at what the bytes say; it only sees when
they arrive, plus explicit lifecycle signals from the wrapper (prompt submitted,
operator cancel, session ended).

States:
- idle: nothing in flight; the next byte (once armed) opens a turn
- emitting: bytes are arriving
- settling: quiet for at least `quiet_interval`, waiting for confirmation
- complete: transient; the boundary fired and the detector returns to idle

Time is always passed in by the caller, so a synthetic trace of
(bytes, timestamp) pairs replays identically.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from ..errors import ConfigError

logger = logging.getLogger(__name__)

IDLE = "idle"
EMITTING = "emitting"
SETTLING = "settling"
COMPLETE = "complete"

DEFAULT_QUIET_INTERVAL = 0.5
DEFAULT_CONFIRM_INTERVAL = 1.5
DEFAULT_MAX_TURN_BYTES = 4 * 1024 * 1024


@dataclass(frozen=True)
class TurnBoundary:
    content: bytes
    started_at: float
    completed_at: float
    byte_length: int
    truncated: bool = False
    interrupted: bool = False


@dataclass(frozen=True)
class DetectorConfig:
    quiet_interval: float = DEFAULT_QUIET_INTERVAL
    confirm_interval: float = DEFAULT_CONFIRM_INTERVAL
    max_turn_bytes: int = DEFAULT_MAX_TURN_BYTES
    require_input: bool = False

    def __post_init__(self) -> None:
        if not (self.quiet_interval > 0):
            raise ConfigError("quiet_interval must be > 0", details={"quiet_interval": self.quiet_interval})
        if not (self.confirm_interval > self.quiet_interval):
            raise ConfigError(
                "confirm_interval must be greater than quiet_interval",
                details={"quiet_interval": self.quiet_interval, "confirm_interval": self.confirm_interval},
            )
        if int(self.max_turn_bytes) < 1:
            raise ConfigError("max_turn_bytes must be >= 1", details={"max_turn_bytes": self.max_turn_bytes})


def _as_bytes(data: Any) -> bytes:
    if isinstance(data, bytes):
        return data
    if isinstance(data, str):
        return data.encode("utf-8", errors="replace")
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    raise TypeError(f"unsupported input type: {type(data).__name__}")


def _as_time(now: Any) -> Optional[float]:
    try:
        return float(now)
    except (TypeError, ValueError):
        logger.warning("detector: ignoring non-numeric timestamp %r", now)
        return None


class TurnDetector:
    """Turns a byte stream into completed-turn boundaries.

    `feed`, `tick`, `notify_input`, `reset` and `close` all return the list of
    boundaries they produced (usually empty, at most one). None of them raise:
    a malformed input is logged and dropped.
    """

    def __init__(self, config: Optional[DetectorConfig] = None) -> None:
        self._cfg = config or DetectorConfig()
        self._state = IDLE
        self._armed = not self._cfg.require_input
        self._closed = False
        self._buf = bytearray()
        self._byte_length = 0
        self._truncated = False
        self._started_at = 0.0
        self._last_byte_at = 0.0

    @property
    def config(self) -> DetectorConfig:
        return self._cfg

    @property
    def state(self) -> str:
        return self._state

    @property
    def pending_bytes(self) -> int:
        return len(self._buf)

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def closed(self) -> bool:
        return self._closed

    def next_deadline(self) -> Optional[float]:
        """Earliest time at which `tick` could change state, or None when idle."""
        if self._state == EMITTING:
            return self._last_byte_at + self._cfg.quiet_interval
        if self._state == SETTLING:
            return self._last_byte_at + self._cfg.confirm_interval
        return None

    def feed(self, data: Any, now: float) -> List[TurnBoundary]:
        t = _as_time(now)
        if self._closed or t is None:
            return []
        try:
            chunk = _as_bytes(data)
        except (TypeError, ValueError):
            logger.warning("detector: dropping non-bytes input of type %s", type(data).__name__)
            return []
        out = self._advance(t)
        if not chunk:
            return out
        if self._state == IDLE:
            if not self._armed:
                return out
            self._state = EMITTING
            self._started_at = t
        elif self._state == SETTLING:
            # Output resumed before confirmation: same turn.
            self._state = EMITTING
        self._accumulate(chunk)
        self._last_byte_at = t
        return out

    def tick(self, now: float) -> List[TurnBoundary]:
        t = _as_time(now)
        if self._closed or t is None:
            return []
        return self._advance(t)

    def notify_input(self, now: float) -> List[TurnBoundary]:
        """The operator submitted a prompt: arm for the next response.

        A response still in flight is completed first (not interrupted): the
        operator has moved on.
        """
        t = _as_time(now)
        if self._closed or t is None:
            return []
        out = self._advance(t)
        if self._state in (EMITTING, SETTLING):
            b = self._complete(t, interrupted=False)
            if b is not None:
                out.append(b)
        self._armed = True
        return out

    def reset(self, now: float) -> List[TurnBoundary]:
        """Operator cancel: emit any partial turn as interrupted."""
        t = _as_time(now)
        if self._closed or t is None:
            return []
        return self._interrupt(t)

    def close(self, now: float) -> List[TurnBoundary]:
        """Session ended: emit any partial turn as interrupted and go inert."""
        if self._closed:
            return []
        t = _as_time(now)
        out = self._interrupt(self._last_byte_at if t is None else t)
        self._closed = True
        return out

    def _interrupt(self, now: float) -> List[TurnBoundary]:
        out = self._advance(now)
        if self._state in (EMITTING, SETTLING):
            b = self._complete(now, interrupted=True)
            if b is not None:
                out.append(b)
        return out

    def _advance(self, t: float) -> List[TurnBoundary]:
        if self._state not in (EMITTING, SETTLING):
            return []
        quiet_for = t - self._last_byte_at
        if self._state == EMITTING and quiet_for >= self._cfg.quiet_interval:
            self._state = SETTLING
        if self._state == SETTLING and quiet_for >= self._cfg.confirm_interval:
            b = self._complete(t, interrupted=False)
            return [b] if b is not None else []
        return []

    def _accumulate(self, chunk: bytes) -> None:
        self._byte_length += len(chunk)
        room = self._cfg.max_turn_bytes - len(self._buf)
        if room >= len(chunk):
            self._buf += chunk
            return
        if room > 0:
            self._buf += chunk[:room]
        self._truncated = True

    def _complete(self, now: float, *, interrupted: bool) -> Optional[TurnBoundary]:
        self._state = COMPLETE
        boundary: Optional[TurnBoundary] = None
        if self._byte_length > 0:
            boundary = TurnBoundary(
                content=bytes(self._buf),
                started_at=self._started_at,
                completed_at=float(now),
                byte_length=self._byte_length,
                truncated=self._truncated,
                interrupted=interrupted,
            )
        self._buf = bytearray()
        self._byte_length = 0
        self._truncated = False
        self._started_at = 0.0
        self._state = IDLE
        if self._cfg.require_input:
            self._armed = False
        return boundary
