from typing import List, Optional, Set
import re

import structlog

from conversation_engine.domain.context.lexicon import Lexicon
from conversation_engine.domain.context.memory.turn_store import TurnStore
from conversation_engine.domain.context.state.state_manager import SessionStateManager
from conversation_engine.domain.models.context import ContextSelectionResult, FeedbackResult, QualityLevel
from conversation_engine.domain.models.conversation import Turn

logger = structlog.get_logger(__name__)

VAGUE_MARKERS = re.compile(r"\b(maybe|perhaps|might|could be|not sure|unclear)\b", re.IGNORECASE)
CONFIDENCE_MARKERS = re.compile(r"\b(definitely|certainly|clearly|obviously|exactly|precisely)\b", re.IGNORECASE)
REFERENCE_PHRASES = re.compile(r"\b(based on|considering|given that|as you mentioned|you said)\b", re.IGNORECASE)
HISTORICAL_MARKERS = re.compile(r"\b(previous|previously|earlier|before|last time)\b", re.IGNORECASE)
MORE_INFO_MARKERS = re.compile(r"(more information|tell me more)", re.IGNORECASE)
TIMELINE_MARKERS = re.compile(r"\b(when did|how long)\b", re.IGNORECASE)

# Used when no prior turns were supplied, so there was nothing to utilize
NEUTRAL_UTILIZATION = 0.7
FEEDBACK_THRESHOLD = 0.6


def quality_level(score: float) -> QualityLevel:
    if score >= 0.8:
        return QualityLevel.EXCELLENT
    if score >= 0.6:
        return QualityLevel.GOOD
    if score >= 0.4:
        return QualityLevel.FAIR
    return QualityLevel.POOR


class FeedbackLoop:
    """Scores collaborator replies against the context they were given.

    Scores land on the AGENT turn and in the session's running quality
    mean. Feedback is advisory: past selections are never rewritten.
    """

    def __init__(
        self,
        store: TurnStore,
        state_manager: SessionStateManager,
        lexicon: Optional[Lexicon] = None,
    ):
        self.store = store
        self.state_manager = state_manager
        self.lexicon = lexicon or state_manager.lexicon

    def response_quality(self, user_message: str, reply: str) -> float:
        score = 0.5
        length = len(reply.strip())
        if 50 <= length <= 1000:
            score += 0.2
        elif 20 <= length <= 2000:
            score += 0.1
        if not VAGUE_MARKERS.search(reply):
            score += 0.15
        if CONFIDENCE_MARKERS.search(reply):
            score += 0.1
        user_keywords = self.lexicon.extract_keywords(user_message)
        if user_keywords:
            overlap = user_keywords & self.lexicon.extract_keywords(reply)
            score += 0.15 * len(overlap) / len(user_keywords)
        return min(score, 1.0)

    def context_utilization(self, reply: str, context_turns: List[Turn]) -> float:
        if not context_turns:
            return NEUTRAL_UTILIZATION
        context_keywords: Set[str] = set()
        for turn in context_turns:
            context_keywords |= self.lexicon.extract_keywords(turn.raw_text)
        reply_keywords = self.lexicon.extract_keywords(reply)

        score = 0.0
        if context_keywords and reply_keywords:
            overlap = context_keywords & reply_keywords
            score += 0.6 * len(overlap) / min(len(context_keywords), len(reply_keywords))
        if REFERENCE_PHRASES.search(reply):
            score += 0.2
        if HISTORICAL_MARKERS.search(reply):
            score += 0.2
        return min(score, 1.0)

    @staticmethod
    def correlation(quality: float, utilization: float) -> float:
        if quality + utilization == 0:
            return 0.0
        return 2 * quality * utilization / (quality + utilization)

    def evaluate(
        self,
        turn_number: int,
        user_message: str,
        reply: str,
        selection: ContextSelectionResult,
    ) -> FeedbackResult:
        """Pure scoring step, no state is touched"""

        quality = self.response_quality(user_message, reply)
        utilization = self.context_utilization(reply, selection.selected_turns)
        correlation = self.correlation(quality, utilization)

        notes = []
        if utilization < FEEDBACK_THRESHOLD:
            notes.append("reply made limited use of the supplied context")
        if selection.confidence_score < FEEDBACK_THRESHOLD:
            notes.append("low context confidence may have limited specificity")
        if notes:
            if MORE_INFO_MARKERS.search(reply):
                notes.append("collaborator asked for more information, context may be insufficient")
            if TIMELINE_MARKERS.search(reply):
                notes.append("timeline context would help")

        return FeedbackResult(
            turn_number=turn_number,
            response_quality=round(quality, 4),
            context_utilization=round(utilization, 4),
            response_context_correlation=round(correlation, 4),
            quality_level=quality_level(quality),
            context_feedback="; ".join(notes) if notes else None,
        )

    async def apply(
        self,
        session_id: str,
        agent_turn: Turn,
        user_message: str,
        selection: ContextSelectionResult,
    ) -> FeedbackResult:
        """Score a reply, persist it on the turn and update session quality"""

        result = self.evaluate(agent_turn.turn_number, user_message, agent_turn.raw_text, selection)
        await self.store.record_feedback(
            session_id,
            agent_turn.turn_number,
            response_quality=result.response_quality,
            context_utilization=result.context_utilization,
            response_context_correlation=result.response_context_correlation,
            context_feedback=result.context_feedback,
        )
        await self.state_manager.apply_feedback(
            session_id, agent_turn.turn_number, result.response_context_correlation
        )
        logger.debug(
            "Feedback recorded",
            session_id=session_id,
            turn_number=agent_turn.turn_number,
            quality=result.response_quality,
            utilization=result.context_utilization,
            level=result.quality_level.value,
        )
        return result
