"""Per-session ring buffer of completed turns."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, Iterator, Optional, Tuple

from ..errors import EmptyRegistry, TurnNotFound
from .detector import TurnBoundary

DEFAULT_RING_DEPTH = 32


@dataclass(frozen=True)
class Turn:
    turn_id: str
    session_id: str
    seq: int
    content: bytes
    started_at: float
    completed_at: float
    byte_length: int
    truncated: bool = False
    interrupted: bool = False


def format_turn_id(session_id: str, seq: int) -> str:
    return f"{session_id}:{int(seq)}"


def parse_turn_id(turn_id: str) -> Tuple[str, int]:
    """Split `<session_id>:<seq>` on the last colon.

    Raises TurnNotFound for anything that cannot name a turn.
    """
    s = str(turn_id or "").strip()
    session_id, sep, seq_s = s.rpartition(":")
    if not sep or not session_id or not seq_s.isdigit():
        raise TurnNotFound(s)
    seq = int(seq_s)
    if seq < 1:
        raise TurnNotFound(s)
    return session_id, seq


class TurnListView:
    """Newest-first view over a snapshot of a registry. Every iteration starts from scratch."""

    def __init__(self, turns: Iterable[Turn], limit: Optional[int]) -> None:
        self._turns: Tuple[Turn, ...] = tuple(turns)
        self._limit = limit

    def __iter__(self) -> Iterator[Turn]:
        remaining = len(self._turns) if self._limit is None else max(0, int(self._limit))
        for t in reversed(self._turns):
            if remaining <= 0:
                return
            remaining -= 1
            yield t

    def __len__(self) -> int:
        n = len(self._turns)
        if self._limit is None:
            return n
        return min(n, max(0, int(self._limit)))


class SessionRegistry:
    """Fixed-capacity, append-only store of one session's turns.

    Sequence numbers keep counting across eviction, so a turn id is never
    reused. Not thread-safe; the broker serializes access.
    """

    def __init__(self, session_id: str, *, capacity: int = DEFAULT_RING_DEPTH, next_seq: int = 1) -> None:
        if int(capacity) < 1:
            raise ValueError("capacity must be >= 1")
        self._session_id = str(session_id)
        self._capacity = int(capacity)
        self._turns: Deque[Turn] = deque()
        self._by_seq: Dict[int, Turn] = {}
        self._next_seq = max(1, int(next_seq))

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def next_seq(self) -> int:
        return self._next_seq

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, boundary: TurnBoundary) -> Turn:
        seq = self._next_seq
        self._next_seq += 1
        turn = Turn(
            turn_id=format_turn_id(self._session_id, seq),
            session_id=self._session_id,
            seq=seq,
            content=bytes(boundary.content),
            started_at=float(boundary.started_at),
            completed_at=float(boundary.completed_at),
            byte_length=int(boundary.byte_length),
            truncated=bool(boundary.truncated),
            interrupted=bool(boundary.interrupted),
        )
        if len(self._turns) >= self._capacity:
            old = self._turns.popleft()
            self._by_seq.pop(old.seq, None)
        self._turns.append(turn)
        self._by_seq[seq] = turn
        return turn

    def get(self, turn_id: str) -> Turn:
        session_id, seq = parse_turn_id(turn_id)
        if session_id != self._session_id:
            raise TurnNotFound(str(turn_id))
        turn = self._by_seq.get(seq)
        if turn is None:
            raise TurnNotFound(str(turn_id))
        return turn

    def list(self, limit: Optional[int] = None) -> TurnListView:
        return TurnListView(self._turns, limit)

    def latest(self) -> Turn:
        if not self._turns:
            raise EmptyRegistry(self._session_id)
        return self._turns[-1]
