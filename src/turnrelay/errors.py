"""Typed errors raised by the broker and its components.

Every error carries a stable `code` that the daemon puts on the wire
(`DaemonError.code`), so clients can branch on it without parsing messages.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class RelayError(Exception):
    code = "relay_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})


class NotFoundError(RelayError):
    code = "not_found"


class SessionNotFound(NotFoundError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}", details={"session_id": session_id})
        self.session_id = session_id


class TurnNotFound(NotFoundError):
    code = "turn_not_found"

    def __init__(self, turn_id: str) -> None:
        super().__init__(f"turn not found: {turn_id}", details={"turn_id": turn_id})
        self.turn_id = turn_id


class EmptyStateError(RelayError):
    code = "empty_state"


class EmptyRegistry(EmptyStateError):
    code = "empty_registry"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session has no completed turns: {session_id}", details={"session_id": session_id})
        self.session_id = session_id


class EmptyRelayBuffer(EmptyStateError):
    code = "empty_relay_buffer"

    def __init__(self) -> None:
        super().__init__("relay buffer is empty (capture a turn first)")


class DeliveryError(RelayError):
    code = "delivery_error"


class SinkDeliveryFailed(DeliveryError):
    """A sink could not deliver. Broker state is unaffected; the call may be retried."""

    code = "sink_delivery_failed"

    def __init__(self, sink: str, reason: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        d: Dict[str, Any] = {"sink": sink, "reason": reason}
        d.update(details or {})
        super().__init__(f"{sink} delivery failed: {reason}", details=d)
        self.sink = sink
        self.reason = reason


class DuplicateSession(RelayError):
    code = "duplicate_session"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session already active: {session_id}", details={"session_id": session_id})
        self.session_id = session_id


class InvalidArgs(RelayError):
    code = "invalid_args"


class ConfigError(RelayError):
    code = "config_error"


class FocusUnresolved(RelayError):
    """No single active session could be matched to the focused window."""

    code = "focus_unresolved"
