from typing import AsyncIterator, Dict, Iterable, Optional, Set
from contextlib import asynccontextmanager
from datetime import datetime
import asyncio

import structlog

from conversation_engine.domain.models.conversation import ConversationHistory, Turn, TurnRole
from conversation_engine.domain.models.session import SessionStatus
from conversation_engine.errors import (
    ArchivedTurnError,
    OrphanReplyError,
    SessionClosedError,
    TurnNotFoundError,
    UnknownSessionError,
)

logger = structlog.get_logger(__name__)

CLOSED_STATUSES = (SessionStatus.ENDED, SessionStatus.ARCHIVED)
ENRICHMENT_FIELDS = {
    "enriched_text",
    "routed_collaborator",
    "classified_intent",
    "intent_confidence",
    "topic_tags",
    "affect_tag",
}
FEEDBACK_FIELDS = {
    "response_quality",
    "context_utilization",
    "response_context_correlation",
    "context_feedback",
}


class TurnStore:
    """Per-session ordered turn log; the only writer of turn numbers.

    Each session has its own lock so appends to one session never wait on
    another. Readers get deep copies; the live history is only reachable
    while holding the session lock through ``locked``.
    """

    def __init__(self):
        self._histories: Dict[str, ConversationHistory] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._purged: Set[str] = set()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        # setdefault keeps this atomic between awaits
        return self._locks.setdefault(session_id, asyncio.Lock())

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[Optional[ConversationHistory]]:
        """Hold the session lock and expose the live history (or None)"""
        async with self._lock_for(session_id):
            yield self._histories.get(session_id)

    async def create(self, session_id: str, user_id: str) -> ConversationHistory:
        """Register an empty history; a purged session id may be reused here"""
        async with self._lock_for(session_id):
            history = self._histories.get(session_id)
            if history is None:
                history = ConversationHistory(session_id=session_id, user_id=user_id)
                self._histories[session_id] = history
                self._purged.discard(session_id)
                logger.debug("Created conversation history", session_id=session_id, user_id=user_id)
            return history.model_copy(deep=True)

    async def append_user(self, session_id: str, user_id: str, text: str) -> Turn:
        """Append a USER turn, creating the history on first use"""

        async with self._lock_for(session_id):
            history = self._histories.get(session_id)
            if history is None:
                if session_id in self._purged:
                    raise UnknownSessionError("Session state was purged", session_id=session_id)
                history = ConversationHistory(session_id=session_id, user_id=user_id)
                self._histories[session_id] = history
            self._ensure_open(history)

            turn = Turn(
                turn_number=history.next_turn_number,
                session_id=session_id,
                role=TurnRole.USER,
                raw_text=text,
            )
            history.turns.append(turn)
            history.touch()

        logger.debug("Appended user turn", session_id=session_id, turn_number=turn.turn_number)
        return turn.model_copy(deep=True)

    async def append_agent_reply(self, session_id: str, collaborator_type: str, text: str) -> Turn:
        """Append an AGENT turn answering the latest user turn"""

        async with self._lock_for(session_id):
            history = self._histories.get(session_id)
            if history is None:
                if session_id in self._purged:
                    raise UnknownSessionError("Session state was purged", session_id=session_id)
                raise OrphanReplyError("Agent reply without a prior user turn", session_id=session_id)
            self._ensure_open(history)
            if not history.has_user_turn():
                raise OrphanReplyError("Agent reply without a prior user turn", session_id=session_id)

            turn = Turn(
                turn_number=history.next_turn_number,
                session_id=session_id,
                role=TurnRole.AGENT,
                raw_text=text,
                routed_collaborator=collaborator_type,
            )
            history.turns.append(turn)
            history.touch()

        logger.debug(
            "Appended agent turn",
            session_id=session_id,
            turn_number=turn.turn_number,
            collaborator=collaborator_type,
        )
        return turn.model_copy(deep=True)

    async def append_system(self, session_id: str, text: str) -> Turn:
        """Append a SYSTEM note such as a pause or restore marker"""

        async with self._lock_for(session_id):
            history = self._histories.get(session_id)
            if history is None:
                raise UnknownSessionError("No history for session", session_id=session_id)
            turn = Turn(
                turn_number=history.next_turn_number,
                session_id=session_id,
                role=TurnRole.SYSTEM,
                raw_text=text,
            )
            history.turns.append(turn)
            history.touch()
            return turn.model_copy(deep=True)

    async def get(self, session_id: str) -> Optional[ConversationHistory]:
        """Snapshot of the session history, or None if the session is unknown"""

        async with self._lock_for(session_id):
            history = self._histories.get(session_id)
            return history.model_copy(deep=True) if history is not None else None

    async def mark_archived(self, session_id: str, turn_numbers: Iterable[int]) -> Set[int]:
        """Archive the given turns; already-archived turns are skipped.

        Returns the turn numbers that changed state.
        """

        async with self._lock_for(session_id):
            history = self._histories.get(session_id)
            if history is None:
                return set()
            return self.archive_turns(history, turn_numbers)

    @staticmethod
    def archive_turns(history: ConversationHistory, turn_numbers: Iterable[int]) -> Set[int]:
        """Archive turns on a history the caller already holds the lock for"""
        changed = set()
        for number in turn_numbers:
            turn = history.get_turn(number)
            if turn is None:
                raise TurnNotFoundError(history.session_id, number)
            if not turn.archived:
                turn.archived = True
                changed.add(number)
        if changed:
            history.touch()
        return changed

    async def update_enrichment(self, session_id: str, turn_number: int, **fields) -> Turn:
        """Set enrichment fields (tags, intent, routing) on a live turn"""
        return await self._update_turn(session_id, turn_number, fields, ENRICHMENT_FIELDS)

    async def record_feedback(self, session_id: str, turn_number: int, **fields) -> Turn:
        """Set feedback scores on an AGENT turn"""
        return await self._update_turn(session_id, turn_number, fields, FEEDBACK_FIELDS, role=TurnRole.AGENT)

    async def _update_turn(
        self,
        session_id: str,
        turn_number: int,
        fields: Dict,
        allowed: Set[str],
        role: Optional[TurnRole] = None,
    ) -> Turn:
        unexpected = set(fields) - allowed
        if unexpected:
            raise ValueError(f"Fields not updatable here: {sorted(unexpected)}")

        async with self._lock_for(session_id):
            history = self._histories.get(session_id)
            if history is None:
                raise UnknownSessionError("No history for session", session_id=session_id)
            turn = history.get_turn(turn_number)
            if turn is None or (role is not None and turn.role != role):
                raise TurnNotFoundError(session_id, turn_number)
            if turn.archived:
                raise ArchivedTurnError(session_id, turn_number)
            # Validate through the model before touching the live turn
            validated = Turn.model_validate({**turn.model_dump(), **fields})
            for name in fields:
                setattr(turn, name, getattr(validated, name))
            return turn.model_copy(deep=True)

    async def set_status(self, session_id: str, status: SessionStatus):
        """Mirror the session status onto the history"""

        async with self._lock_for(session_id):
            history = self._histories.get(session_id)
            if history is not None:
                history.status = status
                history.last_updated = datetime.utcnow()

    async def purge(self, session_id: str):
        """Drop all turns for a session; later writes raise UnknownSessionError"""

        async with self._lock_for(session_id):
            if self._histories.pop(session_id, None) is not None:
                self._purged.add(session_id)
                logger.info("Purged session history", session_id=session_id)
        self._locks.pop(session_id, None)

    @staticmethod
    def _ensure_open(history: ConversationHistory):
        if history.status in CLOSED_STATUSES:
            raise SessionClosedError(
                "Session no longer accepts turns",
                session_id=history.session_id,
                context={"status": history.status.value},
            )
