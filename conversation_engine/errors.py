"""Exception hierarchy for the conversation engine.

Errors fall into three groups:
- Turn store contract violations (surfaced to the caller)
- Session lifecycle violations (surfaced to the caller)
- External hand-off failures (transient, retried and then degraded)

Scoring and rendering faults never leave their component; they are converted
into low-confidence or fallback results and therefore have no public type.
"""

from typing import Any, Dict, Optional


class ConversationEngineError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error description
        session_id: Session the error relates to, when known
        context: Additional error context
    """

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.session_id = session_id
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with context."""
        parts = [self.message]
        if self.session_id:
            parts.append(f"session_id={self.session_id}")
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"context=({ctx_str})")
        return " | ".join(parts)


class TurnStoreError(ConversationEngineError):
    """Turn ordering or identity violation."""


class UnknownSessionError(TurnStoreError):
    """Session state was purged and cannot be written to.

    Recoverable: the caller is expected to start a new session.
    """


class OrphanReplyError(TurnStoreError):
    """Agent reply appended to a session that has no user turn yet."""


class TurnNotFoundError(TurnStoreError):
    """Referenced turn number does not exist in the session."""

    def __init__(self, session_id: str, turn_number: int):
        super().__init__(
            "Turn not found",
            session_id=session_id,
            context={"turn_number": turn_number},
        )
        self.turn_number = turn_number


class ArchivedTurnError(TurnStoreError):
    """Attempt to mutate a turn that has already been archived."""

    def __init__(self, session_id: str, turn_number: int):
        super().__init__(
            "Archived turns are read-only",
            session_id=session_id,
            context={"turn_number": turn_number},
        )
        self.turn_number = turn_number


class SessionStateError(ConversationEngineError):
    """Session lifecycle violation."""


class SessionClosedError(SessionStateError):
    """Session is ENDED or ARCHIVED and accepts no further turns."""


class SessionPausedError(SessionStateError):
    """Session is PAUSED; it must be resumed before new turns are accepted."""


class SessionNotFoundError(SessionStateError):
    """Explicit transition requested for a session that was never started."""


class InvalidTransitionError(SessionStateError):
    """Requested status change is not allowed by the session state machine."""

    def __init__(self, session_id: str, from_status: Any, to_status: Any):
        super().__init__(
            "Invalid session transition",
            session_id=session_id,
            context={
                "from_status": getattr(from_status, "value", from_status),
                "to_status": getattr(to_status, "value", to_status),
            },
        )
        self.from_status = from_status
        self.to_status = to_status


class ExternalHandoffError(ConversationEngineError):
    """Transient failure talking to an external collaborator.

    Raised once retries are exhausted or the caller's deadline would be
    exceeded by another attempt.
    """

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = dict(context or {})
        if attempts:
            context["attempts"] = attempts
        super().__init__(message, session_id=session_id, context=context)
        self.attempts = attempts


class CollaboratorUnavailableError(ExternalHandoffError):
    """Collaborator timed out or returned an empty reply."""
