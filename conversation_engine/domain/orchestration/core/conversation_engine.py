from typing import Dict, List, Optional, Tuple
import re

import structlog
from pydantic import BaseModel, Field

from conversation_engine.config import EngineSettings
from conversation_engine.domain.context.context_selector import ContextSelector
from conversation_engine.domain.context.feedback_loop import FeedbackLoop
from conversation_engine.domain.context.lexicon import Lexicon
from conversation_engine.domain.context.memory.buffer_formatter import BufferFormatter
from conversation_engine.domain.context.memory.rotation_policy import RotationPolicy
from conversation_engine.domain.context.memory.turn_store import TurnStore
from conversation_engine.domain.context.state.continuity import ContinuityStore
from conversation_engine.domain.context.state.state_manager import SessionStateManager
from conversation_engine.domain.models.context import ContextEnrichment, FeedbackResult, MemoryBuffers
from conversation_engine.domain.models.conversation import ConversationHistory, TurnRole
from conversation_engine.domain.models.session import (
    CrossSessionContinuity,
    SessionState,
    SessionStatus,
    TriggerSource,
)
from conversation_engine.domain.orchestration.collaborators import (
    EMERGENCY,
    GENERAL_HEALTH,
    MENTAL_HEALTH,
    CollaboratorBundle,
    ProvisioningClient,
    TextCollaborator,
)
from conversation_engine.errors import (
    ConversationEngineError,
    ExternalHandoffError,
    SessionClosedError,
    SessionPausedError,
    UnknownSessionError,
)
from conversation_engine.infrastructure.handoff.memory_sync import ExternalMemorySync, HandoffReport
from conversation_engine.infrastructure.observability.logging import engine_logger, metrics
from conversation_engine.infrastructure.resilience.retry import RetryPolicy

logger = structlog.get_logger(__name__)

INTENT_PATTERN = re.compile(r"\b(GENERAL_HEALTH|MENTAL_HEALTH|EMERGENCY)\b(?:\s*\|\s*([01](?:\.\d+)?))?")
MENTAL_HEALTH_HINTS = re.compile(r"\b(stress|anxi|depress|panic|lonely|mood)", re.IGNORECASE)
EMERGENCY_HINTS = re.compile(r"\b(emergency|urgent|911)\b", re.IGNORECASE)
ROUTE_NAMES = {
    GENERAL_HEALTH: "general_health",
    MENTAL_HEALTH: "mental_health",
    EMERGENCY: "general_health",
}
FALLBACK_REPLY = (
    "I'm having trouble reaching the right specialist right now. "
    "Please try again in a moment."
)


class ChatResult(BaseModel):
    """Caller-facing outcome of one processed message"""
    session_id: str
    user_turn_number: int
    agent_turn_number: int
    response: str
    intent: str
    intent_confidence: float
    routed_collaborator: str
    context_confidence: float
    context_strategy: str
    relevant_turns: List[int] = Field(default_factory=list)
    conversation_phase: str
    response_quality: Optional[float] = None
    quality_level: Optional[str] = None
    context_feedback: Optional[str] = None
    requires_attention: bool = False
    degraded: bool = False
    archived_turns: List[int] = Field(default_factory=list)
    handoff: Optional[HandoffReport] = None


class ConversationEngine:
    """Runs one inbound message through memory, routing and feedback.

    Sequence per message: append the user turn, select context, classify
    intent, get the routed reply, append it, update session state, score
    the reply, rotate if due, then render and push external memory.
    """

    def __init__(
        self,
        collaborator: TextCollaborator,
        provisioning: ProvisioningClient,
        settings: Optional[EngineSettings] = None,
        store: Optional[TurnStore] = None,
        continuity: Optional[ContinuityStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        memory_sync: Optional[ExternalMemorySync] = None,
    ):
        self.settings = settings or EngineSettings()
        self.collaborator = collaborator
        self.provisioning = provisioning
        self.lexicon = Lexicon(self.settings)
        self.store = store or TurnStore()
        self.formatter = BufferFormatter(self.settings)
        self.rotation = RotationPolicy(self.store, self.formatter, self.settings)
        self.selector = ContextSelector(self.store, self.settings, self.lexicon)
        self.state_manager = SessionStateManager(self.settings, self.lexicon, continuity)
        self.feedback = FeedbackLoop(self.store, self.state_manager, self.lexicon)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.memory_sync = memory_sync or ExternalMemorySync(collaborator, self.retry_policy, self.settings)
        self._bundles: Dict[str, CollaboratorBundle] = {}

    async def _bundle(self, user_id: str) -> CollaboratorBundle:
        bundle = self._bundles.get(user_id)
        if bundle is None:
            bundle = await self.provisioning.get_bundle(user_id)
            self._bundles[user_id] = bundle
        return bundle

    async def start_session(self, session_id: str, user_id: str) -> SessionState:
        await self.store.create(session_id, user_id)
        state = await self.state_manager.start_session(session_id, user_id)
        await self.store.set_status(session_id, state.status)
        logger.info("Session started", session_id=session_id, user_id=user_id)
        return state

    async def process_message(
        self,
        session_id: str,
        user_id: str,
        text: str,
        timeout: Optional[float] = None,
    ) -> ChatResult:
        """Handle one user message end to end"""

        deadline = self.retry_policy.clock() + timeout if timeout is not None else None

        state = await self.state_manager.get(session_id)
        if state is None:
            state = await self.start_session(session_id, user_id)
        if not state.is_open():
            if state.status == SessionStatus.PAUSED:
                raise SessionPausedError("Resume the session before sending messages", session_id=session_id)
            raise SessionClosedError("Start a new session", session_id=session_id,
                                     context={"status": state.status.value})

        bundle = await self._bundle(user_id)

        try:
            user_turn = await self.store.append_user(session_id, user_id, text)
        except UnknownSessionError:
            logger.warning("Session history was purged, starting a fresh one", session_id=session_id)
            await self.store.create(session_id, user_id)
            user_turn = await self.store.append_user(session_id, user_id, text)
        user_turn = await self.store.update_enrichment(
            session_id,
            user_turn.turn_number,
            topic_tags=self.lexicon.topic_tags(text),
            affect_tag=self.lexicon.detect_affect(text),
        )
        engine_logger.log_turn_event(session_id, user_turn.turn_number, TurnRole.USER.value)

        enrichment = await self.selector.select(
            session_id, text, user_turn.turn_number, phase=state.conversation_phase
        )
        intent, intent_confidence = await self.classify_intent(bundle, enrichment)
        route = ROUTE_NAMES[intent]

        user_turn = await self.store.update_enrichment(
            session_id,
            user_turn.turn_number,
            enriched_text=enrichment.enriched_message,
            classified_intent=intent,
            intent_confidence=intent_confidence,
            routed_collaborator=route,
        )

        prompt = await self.build_prompt(session_id, enrichment)
        reply, degraded = await self.request_reply(bundle, intent, prompt, deadline)

        agent_turn = await self.store.append_agent_reply(session_id, route, reply)
        agent_turn = await self.store.update_enrichment(
            session_id,
            agent_turn.turn_number,
            topic_tags=self.lexicon.topic_tags(reply),
        )
        engine_logger.log_turn_event(session_id, agent_turn.turn_number, TurnRole.AGENT.value, collaborator=route)

        await self.state_manager.record_turn(session_id, user_turn)
        state = await self.state_manager.record_turn(session_id, agent_turn)
        await self.store.set_status(session_id, state.status)

        feedback = await self._apply_feedback(session_id, agent_turn, text, enrichment)

        archived = await self.rotation.maybe_rotate(session_id)
        buffers, total_turns = await self.render_buffers(session_id)
        handoff = None
        if buffers is not None:
            handoff = await self.memory_sync.sync(
                bundle, buffers, total_turns, rotated=bool(archived), deadline=deadline
            )

        state = await self.state_manager.get(session_id)
        result = ChatResult(
            session_id=session_id,
            user_turn_number=user_turn.turn_number,
            agent_turn_number=agent_turn.turn_number,
            response=reply,
            intent=intent,
            intent_confidence=intent_confidence,
            routed_collaborator=route,
            context_confidence=enrichment.selection.confidence_score,
            context_strategy=enrichment.selection.strategy,
            relevant_turns=enrichment.selection.selected_turn_numbers,
            conversation_phase=state.conversation_phase.value,
            response_quality=feedback.response_quality if feedback else None,
            quality_level=feedback.quality_level.value if feedback else None,
            context_feedback=feedback.context_feedback if feedback else None,
            requires_attention=state.requires_attention(self.settings.attention_quality_threshold),
            degraded=degraded or enrichment.selection.is_degraded,
            archived_turns=archived or [],
            handoff=handoff,
        )
        metrics.increment_counter("messages.processed", tags={"intent": intent})
        return result

    async def classify_intent(self, bundle: CollaboratorBundle, enrichment: ContextEnrichment) -> Tuple[str, float]:
        """Ask the intent collaborator, falling back to keyword routing"""

        prompt = "CLASSIFY_INTENT\n%s" % enrichment.enriched_message
        try:
            reply = await self.collaborator.send(bundle.intent_handle, prompt, bundle.identity_handle)
        except Exception as e:
            logger.warning("Intent classification failed, using keyword routing",
                           session_id=enrichment.session_id, error=str(e))
            return self.fallback_intent(enrichment.enriched_message)

        match = INTENT_PATTERN.search(reply.upper())
        if match is None:
            logger.warning("Unparseable intent reply, using keyword routing",
                           session_id=enrichment.session_id, reply=reply[:100])
            return self.fallback_intent(enrichment.enriched_message)
        confidence = float(match.group(2)) if match.group(2) else 0.8
        return match.group(1), min(confidence, 1.0)

    @staticmethod
    def fallback_intent(text: str) -> Tuple[str, float]:
        first_line = text.splitlines()[0] if text else ""
        if EMERGENCY_HINTS.search(first_line):
            return EMERGENCY, 0.9
        if MENTAL_HEALTH_HINTS.search(first_line):
            return MENTAL_HEALTH, 0.8
        return GENERAL_HEALTH, 0.7

    async def build_prompt(self, session_id: str, enrichment: ContextEnrichment) -> str:
        history = await self.store.get(session_id)
        state = await self.state_manager.get(session_id)
        digest = self.formatter.render_digest(history, state) if history is not None else ""
        return "%s\nSESSION: %s" % (enrichment.enriched_message, digest)

    async def request_reply(
        self,
        bundle: CollaboratorBundle,
        intent: str,
        prompt: str,
        deadline: Optional[float],
    ) -> Tuple[str, bool]:
        """Routed reply with retries; a fallback message when it cannot be had"""

        handle = bundle.reply_handle(intent)

        async def call() -> str:
            return await self.collaborator.send(handle, prompt, bundle.identity_handle)

        try:
            return await self.retry_policy.run(call, deadline=deadline, description="collaborator reply"), False
        except ExternalHandoffError as e:
            logger.error("Collaborator reply unavailable, sending fallback", handle=handle, error=e.message)
            metrics.increment_counter("reply.fallback")
            return FALLBACK_REPLY, True

    async def _apply_feedback(self, session_id, agent_turn, text, enrichment) -> Optional[FeedbackResult]:
        try:
            return await self.feedback.apply(session_id, agent_turn, text, enrichment.selection)
        except ConversationEngineError as e:
            logger.warning("Feedback not recorded", session_id=session_id, error=str(e))
            return None

    async def render_buffers(self, session_id: str) -> Tuple[Optional[MemoryBuffers], int]:
        """Render under the session lock; the caller sends after release"""

        state = await self.state_manager.get(session_id)
        async with self.store.locked(session_id) as history:
            if history is None:
                return None, 0
            buffers = self.formatter.render_all(
                history, state, rotation_needed=self.rotation.is_rotation_needed(history)
            )
            return buffers, history.total_turns

    async def pause_session(self, session_id: str, reason: str = "Paused by user") -> SessionState:
        state = await self.state_manager.pause(session_id, reason=reason)
        await self.store.set_status(session_id, state.status)
        await self.store.append_system(session_id, "SESSION_PAUSED: %s" % reason)
        return state

    async def resume_session(self, session_id: str, reason: str = "Resumed by user") -> SessionState:
        """Resume; the returned state carries the context preserved at pause"""
        state = await self.state_manager.resume(session_id, reason=reason)
        await self.store.set_status(session_id, state.status)
        await self.store.append_system(session_id, "SESSION_RESUMED: %s" % reason)
        return state

    async def end_session(
        self,
        session_id: str,
        reason: str = "Ended by user",
        resolution_achieved: Optional[bool] = None,
    ) -> SessionState:
        """Close the session and fold it into the user's continuity record"""

        history = await self.store.get(session_id)
        state = await self.state_manager.get(session_id)
        last_user = history.last_turn(TurnRole.USER) if history else None

        if resolution_achieved is None:
            resolution_achieved = bool(last_user and self.lexicon.has_resolution_marker(last_user.raw_text))
        recommendations = []
        if state is not None and not resolution_achieved and state.requires_attention(
            self.settings.attention_quality_threshold
        ):
            recommendations.append("Check in about %s" % (state.current_topic or "the last conversation"))

        state = await self.state_manager.end(
            session_id,
            reason=reason,
            trigger=TriggerSource.USER,
            resolution_achieved=resolution_achieved,
            follow_up_recommendations=recommendations,
            final_affect_tag=last_user.affect_tag if last_user else None,
        )
        await self.store.set_status(session_id, state.status)
        logger.info("Session ended", **state.get_state_summary())
        return state

    async def archive_session(self, session_id: str, retain_for_continuity: bool = True) -> SessionState:
        state = await self.state_manager.archive(session_id, retain_for_continuity=retain_for_continuity)
        await self.store.set_status(session_id, state.status)
        return state

    async def get_history(self, session_id: str) -> Optional[ConversationHistory]:
        return await self.store.get(session_id)

    async def get_session_state(self, session_id: str) -> Optional[SessionState]:
        return await self.state_manager.get(session_id)

    async def get_continuity(self, user_id: str) -> Optional[CrossSessionContinuity]:
        return await self.state_manager.continuity.get(user_id)
