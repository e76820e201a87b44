from typing import Dict, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import asyncio

import structlog

from conversation_engine.config import EngineSettings
from conversation_engine.domain.context.lexicon import Lexicon
from conversation_engine.domain.context.state.continuity import ContinuityStore
from conversation_engine.domain.models.conversation import Turn, TurnRole
from conversation_engine.domain.models.session import (
    PHASE_ORDER,
    EngagementLevel,
    SessionState,
    SessionStatus,
    SessionTransition,
    TransitionType,
    TriggerSource,
    phase_for_turns,
)
from conversation_engine.errors import (
    InvalidTransitionError,
    SessionClosedError,
    SessionNotFoundError,
    SessionPausedError,
)
from conversation_engine.infrastructure.observability.logging import engine_logger

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    None: {SessionStatus.INITIALIZING},
    SessionStatus.INITIALIZING: {SessionStatus.ACTIVE, SessionStatus.ENDED, SessionStatus.ERROR},
    SessionStatus.ACTIVE: {SessionStatus.PAUSED, SessionStatus.ENDED, SessionStatus.ERROR},
    SessionStatus.PAUSED: {SessionStatus.ACTIVE, SessionStatus.ENDED, SessionStatus.ERROR},
    SessionStatus.ERROR: {SessionStatus.ACTIVE, SessionStatus.ENDED},
    SessionStatus.ENDED: {SessionStatus.ARCHIVED},
    SessionStatus.ARCHIVED: set(),
}


def transition_type(from_status: Optional[SessionStatus], to_status: SessionStatus) -> TransitionType:
    if to_status == SessionStatus.INITIALIZING:
        return TransitionType.INITIALIZATION
    if to_status == SessionStatus.PAUSED:
        return TransitionType.PAUSE
    if to_status == SessionStatus.ENDED:
        return TransitionType.TERMINATION
    if to_status == SessionStatus.ARCHIVED:
        return TransitionType.ARCHIVAL
    if to_status == SessionStatus.ERROR:
        return TransitionType.ERROR
    if from_status == SessionStatus.PAUSED:
        return TransitionType.RESUME
    if from_status == SessionStatus.ERROR:
        return TransitionType.RECOVERY
    return TransitionType.ACTIVATION


class SessionStateManager:
    """Owns session lifecycle records and their transition log.

    Every read-modify-write happens under that session's lock; different
    sessions never wait on each other.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        lexicon: Optional[Lexicon] = None,
        continuity: Optional[ContinuityStore] = None,
    ):
        self.settings = settings or EngineSettings()
        self.lexicon = lexicon or Lexicon(self.settings)
        self.continuity = continuity or ContinuityStore()
        self.states: Dict[str, SessionState] = {}
        self._transitions: Dict[str, List[SessionTransition]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def _session(self, session_id: str):
        async with self._locks.setdefault(session_id, asyncio.Lock()):
            state = self.states.get(session_id)
            if state is None:
                raise SessionNotFoundError("Session was never started", session_id=session_id)
            yield state

    def _transition(
        self,
        state: SessionState,
        to_status: SessionStatus,
        reason: str,
        trigger: TriggerSource,
        **metadata
    ) -> SessionTransition:
        from_status = state.status if state.session_id in self._transitions else None
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransitionError(state.session_id, from_status, to_status)

        event = SessionTransition(
            session_id=state.session_id,
            from_status=from_status,
            to_status=to_status,
            transition_type=transition_type(from_status, to_status),
            reason=reason,
            trigger_source=trigger,
            metadata=metadata,
        )
        self._transitions.setdefault(state.session_id, []).append(event)
        state.status = to_status
        state.last_updated = event.timestamp

        engine_logger.log_session_transition(
            session_id=state.session_id,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            reason=reason,
            trigger_source=trigger.value,
        )
        return event

    async def start_session(self, session_id: str, user_id: str) -> SessionState:
        """Create the session record; starting an existing session returns it"""

        async with self._locks.setdefault(session_id, asyncio.Lock()):
            state = self.states.get(session_id)
            if state is not None:
                return state.model_copy(deep=True)

            state = SessionState(session_id=session_id, user_id=user_id)
            ContinuityStore.seed(state, await self.continuity.get(user_id))
            self.states[session_id] = state
            self._transition(state, SessionStatus.INITIALIZING, "Session started", TriggerSource.USER)
            return state.model_copy(deep=True)

    async def record_turn(self, session_id: str, turn: Turn) -> SessionState:
        """Recompute derived metrics after a turn was ingested"""

        async with self._session(session_id) as state:
            if state.status in (SessionStatus.ENDED, SessionStatus.ARCHIVED):
                raise SessionClosedError(
                    "Session no longer accepts turns",
                    session_id=session_id,
                    context={"status": state.status.value},
                )
            if state.status == SessionStatus.PAUSED:
                raise SessionPausedError("Session is paused", session_id=session_id)
            if state.status == SessionStatus.INITIALIZING:
                self._transition(state, SessionStatus.ACTIVE, "First turn received", TriggerSource.SYSTEM)
            elif state.status == SessionStatus.ERROR:
                self._transition(state, SessionStatus.ACTIVE, "Turn received after error", TriggerSource.SYSTEM)

            state.total_turns = max(state.total_turns, turn.turn_number)
            new_phase = phase_for_turns(state.total_turns, self.settings.phase_thresholds)
            if PHASE_ORDER.index(new_phase) > PHASE_ORDER.index(state.conversation_phase):
                state.conversation_phase = new_phase

            if turn.topic_tags:
                state.primary_topics |= turn.topic_tags
                state.current_topic = sorted(turn.topic_tags)[0]

            if turn.role == TurnRole.AGENT and turn.routed_collaborator:
                agent = turn.routed_collaborator
                if state.last_agent_type and state.last_agent_type != agent:
                    state.agent_switches += 1
                state.last_agent_type = agent
                if agent not in state.agents_used:
                    state.agents_used.append(agent)
            elif turn.role == TurnRole.USER:
                count = state.user_message_count
                state.average_user_message_length = (
                    state.average_user_message_length * count + len(turn.raw_text)
                ) / (count + 1)
                state.user_message_count = count + 1
                state.question_count += self.lexicon.count_questions(turn.raw_text)

            state.complexity_score = self.complexity(state)
            state.engagement_level = self.engagement(state)
            state.last_updated = datetime.utcnow()
            self._update_boundary_flags(state)
            return state.model_copy(deep=True)

    async def apply_feedback(self, session_id: str, turn_number: int, correlation: float) -> SessionState:
        """Fold one agent turn's correlation into the running quality mean"""

        async with self._session(session_id) as state:
            if turn_number not in state.scored_agent_turns:
                scored = len(state.scored_agent_turns)
                state.quality_score = (state.quality_score * scored + correlation) / (scored + 1)
                state.scored_agent_turns.add(turn_number)
                self._update_boundary_flags(state)
            return state.model_copy(deep=True)

    async def pause(
        self,
        session_id: str,
        reason: str = "Paused by user",
        trigger: TriggerSource = TriggerSource.USER,
        preserved_context: Optional[str] = None,
    ) -> SessionState:
        async with self._session(session_id) as state:
            self._transition(state, SessionStatus.PAUSED, reason, trigger)
            state.preserved_context = preserved_context or self._preserved_context(state)
            return state.model_copy(deep=True)

    async def resume(
        self,
        session_id: str,
        reason: str = "Resumed by user",
        trigger: TriggerSource = TriggerSource.USER,
    ) -> SessionState:
        async with self._session(session_id) as state:
            if state.status != SessionStatus.PAUSED:
                raise InvalidTransitionError(session_id, state.status, SessionStatus.ACTIVE)
            self._transition(state, SessionStatus.ACTIVE, reason, trigger)
            return state.model_copy(deep=True)

    async def end(
        self,
        session_id: str,
        reason: str = "Ended by user",
        trigger: TriggerSource = TriggerSource.USER,
        resolution_achieved: bool = False,
        follow_up_recommendations: Optional[List[str]] = None,
        final_affect_tag: Optional[str] = None,
    ) -> SessionState:
        """Close the session, fold it into continuity and archive it if due"""

        async with self._session(session_id) as state:
            self._transition(state, SessionStatus.ENDED, reason, trigger)
            state.ended_at = state.last_updated
            state.closure_reason = reason
            state.resolution_achieved = resolution_achieved
            state.follow_up_recommendations = list(follow_up_recommendations or [])
            if state.follow_up_recommendations:
                state.requires_follow_up = True
            closed = state.model_copy(deep=True)

        await self.continuity.record_session_end(closed, final_affect_tag)
        await self.check_archival(session_id)
        return await self.get(session_id)

    async def archive(
        self,
        session_id: str,
        reason: str = "Archived on request",
        trigger: TriggerSource = TriggerSource.USER,
        retain_for_continuity: bool = True,
    ) -> SessionState:
        async with self._session(session_id) as state:
            self._transition(state, SessionStatus.ARCHIVED, reason, trigger)
            state.accessible_for_continuity = retain_for_continuity
            snapshot = state.model_copy(deep=True)

        if not retain_for_continuity:
            await self.continuity.mark_inaccessible(snapshot.user_id, session_id)
        return snapshot

    async def check_archival(self, session_id: str, now: Optional[datetime] = None) -> bool:
        """Archive an ENDED session once it is large or old enough"""

        state = await self.get(session_id)
        if state is None or state.status != SessionStatus.ENDED:
            return False
        now = now or datetime.utcnow()
        too_long = state.total_turns >= self.settings.session_archive_turns
        too_old = now - state.created_at >= timedelta(hours=self.settings.session_archive_hours)
        if not (too_long or too_old):
            return False
        reason = "Turn count reached archival threshold" if too_long else "Session age reached archival threshold"
        await self.archive(session_id, reason=reason, trigger=TriggerSource.SYSTEM if too_long else TriggerSource.TIMEOUT)
        return True

    async def mark_error(self, session_id: str, reason: str) -> SessionState:
        async with self._session(session_id) as state:
            if state.status != SessionStatus.ERROR:
                self._transition(state, SessionStatus.ERROR, reason, TriggerSource.ERROR)
            return state.model_copy(deep=True)

    async def set_follow_up(self, session_id: str, required: bool = True) -> SessionState:
        async with self._session(session_id) as state:
            state.requires_follow_up = required
            return state.model_copy(deep=True)

    async def get(self, session_id: str) -> Optional[SessionState]:
        state = self.states.get(session_id)
        return state.model_copy(deep=True) if state is not None else None

    async def transitions(self, session_id: str) -> List[SessionTransition]:
        return list(self._transitions.get(session_id, []))

    async def requires_attention(self, session_id: str) -> bool:
        state = await self.get(session_id)
        if state is None:
            return False
        return state.requires_attention(self.settings.attention_quality_threshold)

    @staticmethod
    def complexity(state: SessionState) -> float:
        return min(
            1.0,
            0.1
            + 0.02 * min(state.total_turns, 20)
            + 0.1 * min(len(state.primary_topics), 3)
            + 0.05 * min(state.agent_switches, 4),
        )

    @staticmethod
    def engagement(state: SessionState) -> EngagementLevel:
        if state.average_user_message_length > 100 and state.question_count > 2:
            return EngagementLevel.HIGH
        if state.average_user_message_length > 50:
            return EngagementLevel.MEDIUM
        return EngagementLevel.LOW

    def _update_boundary_flags(self, state: SessionState):
        flags = set()
        if state.total_turns >= self.settings.archival_trigger_turns:
            flags.add("archival_required")
        if state.is_long_running(self.settings.long_running_minutes):
            flags.add("long_running")
        if state.scored_agent_turns and state.quality_score < self.settings.attention_quality_threshold:
            flags.add("quality_issues")
        state.boundary_flags = flags

    @staticmethod
    def _preserved_context(state: SessionState) -> str:
        topics = ", ".join(sorted(state.primary_topics)) or "none"
        return "Topic: %s | Topics: %s | Phase: %s | Turns: %d | Last agent: %s" % (
            state.current_topic or "general",
            topics,
            state.conversation_phase.value,
            state.total_turns,
            state.last_agent_type or "none",
        )
