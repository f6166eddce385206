from __future__ import annotations

from typing import Optional

from ..errors import EmptyRelayBuffer
from .registry import Turn


class RelayBuffer:
    """The single captured-turn slot.

    Holds a reference to an immutable Turn, so evicting the turn from its
    registry later does not invalidate what was captured.
    """

    def __init__(self) -> None:
        self._turn: Optional[Turn] = None

    def replace(self, turn: Turn) -> None:
        self._turn = turn

    def get(self) -> Turn:
        if self._turn is None:
            raise EmptyRelayBuffer()
        return self._turn

    def peek(self) -> Optional[Turn]:
        return self._turn
