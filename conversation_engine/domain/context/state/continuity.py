from typing import Dict, Optional
from datetime import datetime
import asyncio

import structlog

from conversation_engine.domain.models.session import (
    CrossSessionContinuity,
    SessionState,
    SessionSummary,
)

logger = structlog.get_logger(__name__)


class ContinuityStore:
    """Per-user aggregate of closed sessions.

    Records are created on the first session close and never deleted;
    individual summaries can only be hidden from future seeding.
    """

    def __init__(self):
        self._records: Dict[str, CrossSessionContinuity] = {}
        self._lock = asyncio.Lock()

    async def record_session_end(
        self,
        state: SessionState,
        final_affect_tag: Optional[str] = None,
    ) -> CrossSessionContinuity:
        """Fold a closed session into its user's continuity record"""

        summary = SessionSummary(
            session_id=state.session_id,
            user_id=state.user_id,
            started_at=state.created_at,
            ended_at=state.ended_at or datetime.utcnow(),
            total_turns=state.total_turns,
            primary_topics=sorted(state.primary_topics),
            final_topic=state.current_topic,
            final_affect_tag=final_affect_tag,
            agents_used=list(state.agents_used),
            quality_score=state.quality_score,
            resolution_achieved=state.resolution_achieved,
            requires_follow_up=state.requires_follow_up,
            accessible=state.accessible_for_continuity,
        )

        async with self._lock:
            record = self._records.get(state.user_id)
            if record is None:
                record = CrossSessionContinuity(user_id=state.user_id)
                self._records[state.user_id] = record

            if any(s.session_id == summary.session_id for s in record.summaries):
                return record.model_copy(deep=True)

            record.summaries.append(summary)
            for topic in summary.primary_topics:
                record.topic_counts[topic] = record.topic_counts.get(topic, 0) + 1
            for agent in summary.agents_used:
                record.agent_counts[agent] = record.agent_counts.get(agent, 0) + 1
            if summary.final_topic:
                record.preserved_topic = summary.final_topic
            if final_affect_tag:
                record.preserved_affect_tag = final_affect_tag
            record.total_sessions += 1
            record.last_updated = datetime.utcnow()

            logger.info(
                "Session folded into continuity",
                user_id=state.user_id,
                session_id=state.session_id,
                total_sessions=record.total_sessions,
            )
            return record.model_copy(deep=True)

    async def get(self, user_id: str) -> Optional[CrossSessionContinuity]:
        async with self._lock:
            record = self._records.get(user_id)
            return record.model_copy(deep=True) if record is not None else None

    async def mark_inaccessible(self, user_id: str, session_id: str) -> bool:
        """Hide a summary whose session was purged; the record itself stays"""

        async with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return False
            for summary in record.summaries:
                if summary.session_id == session_id and summary.accessible:
                    summary.accessible = False
                    record.last_updated = datetime.utcnow()
                    return True
            return False

    @staticmethod
    def seed(state: SessionState, record: Optional[CrossSessionContinuity]):
        """Carry preserved topic, affect and preferred collaborators into a new session"""
        if record is None:
            return
        recent = record.most_recent_session()
        state.seeded_topic = record.preserved_topic if recent is not None else None
        state.seeded_affect_tag = record.preserved_affect_tag if recent is not None else None
        state.preferred_agents = record.preferred_agents()
        if recent is not None and recent.requires_follow_up:
            state.requires_follow_up = True
