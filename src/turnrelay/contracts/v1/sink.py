from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, model_validator

SinkKind = Literal["clipboard", "file", "inject"]


class SinkSpec(BaseModel):
    """Names a delivery target: clipboard, a file path, or a session to inject into."""

    kind: SinkKind
    path: Optional[str] = None
    session_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_target(self) -> "SinkSpec":
        if self.kind == "file" and not str(self.path or "").strip():
            raise ValueError("file sink requires path")
        if self.kind == "inject" and not str(self.session_id or "").strip():
            raise ValueError("inject sink requires session_id")
        return self

    def label(self) -> str:
        if self.kind == "file":
            return f"file:{self.path}"
        if self.kind == "inject":
            return f"inject:{self.session_id}"
        return "clipboard"
