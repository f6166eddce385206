from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SessionStatus = Literal["active", "closed"]


class TurnMeta(BaseModel):
    """Wire form of a completed turn, without its content."""

    turn_id: str
    session_id: str
    started_at: str
    completed_at: str
    byte_length: int
    truncated: bool = False
    interrupted: bool = False

    model_config = ConfigDict(extra="forbid")


class SessionInfo(BaseModel):
    session_id: str
    status: SessionStatus = "active"
    created_at: str
    closed_at: Optional[str] = None
    pid: int = 0
    child_pid: int = 0
    command: List[str] = Field(default_factory=list)
    has_turn: bool = False
    turn_count: int = 0
    next_seq: int = 1

    model_config = ConfigDict(extra="forbid")
