from __future__ import annotations

from .ipc import DaemonError, DaemonRequest, DaemonResponse, InjectArgs, InjectFrame
from .sink import SinkKind, SinkSpec
from .turn import SessionInfo, SessionStatus, TurnMeta

__all__ = [
    "DaemonError",
    "DaemonRequest",
    "DaemonResponse",
    "InjectArgs",
    "InjectFrame",
    "SessionInfo",
    "SessionStatus",
    "SinkKind",
    "SinkSpec",
    "TurnMeta",
]
