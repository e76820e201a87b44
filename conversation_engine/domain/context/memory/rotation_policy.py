from typing import List, Optional
import math

import structlog

from conversation_engine.config import EngineSettings
from conversation_engine.domain.context.memory.buffer_formatter import BufferFormatter
from conversation_engine.domain.context.memory.turn_store import TurnStore
from conversation_engine.domain.models.conversation import ConversationHistory
from conversation_engine.infrastructure.observability.logging import engine_logger, metrics

logger = structlog.get_logger(__name__)


class RotationPolicy:
    """Decides when a session's active turn set must shrink and shrinks it.

    Rotation only flips ``archived`` on the oldest turns. Turns are never
    removed, renumbered or reordered.
    """

    def __init__(
        self,
        store: TurnStore,
        formatter: Optional[BufferFormatter] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or EngineSettings()
        self.store = store
        self.formatter = formatter or BufferFormatter(self.settings)

    def is_rotation_needed(self, history: ConversationHistory) -> bool:
        """Turn count or verbatim occupancy is past its trigger"""
        if history.total_turns >= self.settings.archival_trigger_turns:
            return True
        threshold = self.settings.rotation_threshold * self.settings.conversation_history_limit
        return len(self.formatter.format_conversation(history)) >= threshold

    def turns_to_archive(self, history: ConversationHistory) -> List[int]:
        """Oldest turns outside the retained share that are still active"""
        total = history.total_turns
        keep = math.ceil(total * self.settings.rotation_keep_ratio)
        cutoff = total - keep
        return [
            turn.turn_number for turn in history.turns[:cutoff]
            if not turn.archived
        ]

    async def check(self, session_id: str) -> bool:
        history = await self.store.get(session_id)
        return history is not None and self.is_rotation_needed(history)

    async def perform_rotation(self, session_id: str) -> Optional[List[int]]:
        """Archive the oldest turns under the session lock.

        Returns the newly archived turn numbers (empty when nothing changed),
        or None when rotation failed. Failures are logged and left for the
        next trigger check.
        """

        try:
            async with self.store.locked(session_id) as history:
                if history is None:
                    return []
                candidates = self.turns_to_archive(history)
                changed = sorted(TurnStore.archive_turns(history, candidates))
                total = history.total_turns
                archived_total = len(history.archived_turns())
        except Exception as e:
            logger.error("Rotation failed", session_id=session_id, error=str(e), exc_info=True)
            metrics.increment_counter("rotation.failed")
            return None

        if changed:
            engine_logger.log_rotation(
                session_id=session_id,
                archived_now=len(changed),
                archived_total=archived_total,
                total_turns=total,
            )
            metrics.increment_counter("rotation.performed")
            metrics.set_gauge("rotation.archived_total", archived_total, tags={"session_id": session_id})
        return changed

    async def maybe_rotate(self, session_id: str) -> Optional[List[int]]:
        """Rotate only when a trigger fires; [] means no rotation was needed"""

        try:
            needed = await self.check(session_id)
        except Exception as e:
            logger.error("Rotation check failed", session_id=session_id, error=str(e))
            return None
        if not needed:
            return []
        return await self.perform_rotation(session_id)
