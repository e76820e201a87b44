from datetime import datetime, timedelta

import pytest

from conversation_engine.config import EngineSettings
from conversation_engine.domain.context.state.state_manager import SessionStateManager
from conversation_engine.domain.models.conversation import Turn, TurnRole
from conversation_engine.domain.models.session import (
    PHASE_ORDER,
    ConversationPhase,
    EngagementLevel,
    SessionStatus,
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


def user_turn(number, text="hello", tags=None):
    return Turn(turn_number=number, session_id="s1", role=TurnRole.USER, raw_text=text, topic_tags=tags or set())


def agent_turn(number, agent="general_health", text="ok", tags=None):
    return Turn(
        turn_number=number, session_id="s1", role=TurnRole.AGENT, raw_text=text,
        routed_collaborator=agent, topic_tags=tags or set(),
    )


@pytest.fixture
def manager(settings):
    return SessionStateManager(settings)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_first_turn_activates(self, manager):
        state = await manager.start_session("s1", "u1")
        assert state.status == SessionStatus.INITIALIZING

        state = await manager.record_turn("s1", user_turn(1))

        assert state.status == SessionStatus.ACTIVE
        transitions = await manager.transitions("s1")
        assert [t.transition_type for t in transitions] == [
            TransitionType.INITIALIZATION,
            TransitionType.ACTIVATION,
        ]
        assert transitions[0].from_status is None
        assert transitions[1].trigger_source == TriggerSource.SYSTEM

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, manager):
        await manager.start_session("s1", "u1")
        await manager.start_session("s1", "u1")
        assert len(await manager.transitions("s1")) == 1

    @pytest.mark.asyncio
    async def test_pause_resume_end(self, manager):
        await manager.start_session("s1", "u1")
        await manager.record_turn("s1", user_turn(1, tags={"Sleep"}))

        paused = await manager.pause("s1")
        assert paused.status == SessionStatus.PAUSED
        assert "Topic: Sleep" in paused.preserved_context
        with pytest.raises(SessionPausedError):
            await manager.record_turn("s1", agent_turn(2))

        resumed = await manager.resume("s1")
        assert resumed.status == SessionStatus.ACTIVE
        await manager.record_turn("s1", agent_turn(2))

        ended = await manager.end("s1", reason="done")
        assert ended.status == SessionStatus.ENDED
        assert ended.closure_reason == "done"
        with pytest.raises(SessionClosedError):
            await manager.record_turn("s1", user_turn(3))

        types = [t.transition_type for t in await manager.transitions("s1")]
        assert types == [
            TransitionType.INITIALIZATION,
            TransitionType.ACTIVATION,
            TransitionType.PAUSE,
            TransitionType.RESUME,
            TransitionType.TERMINATION,
        ]

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, manager):
        await manager.start_session("s1", "u1")
        with pytest.raises(InvalidTransitionError):
            await manager.pause("s1")
        with pytest.raises(InvalidTransitionError):
            await manager.resume("s1")

        await manager.end("s1")
        with pytest.raises(InvalidTransitionError):
            await manager.pause("s1")

        with pytest.raises(SessionNotFoundError):
            await manager.pause("missing")

    @pytest.mark.asyncio
    async def test_transition_records_are_immutable(self, manager):
        await manager.start_session("s1", "u1")
        transition = (await manager.transitions("s1"))[0]
        with pytest.raises(Exception):
            transition.reason = "changed"

    @pytest.mark.asyncio
    async def test_error_and_recovery(self, manager):
        await manager.start_session("s1", "u1")
        await manager.record_turn("s1", user_turn(1))

        state = await manager.mark_error("s1", "collaborator crashed")
        assert state.status == SessionStatus.ERROR
        assert await manager.requires_attention("s1")

        state = await manager.record_turn("s1", agent_turn(2))
        assert state.status == SessionStatus.ACTIVE
        assert (await manager.transitions("s1"))[-1].transition_type == TransitionType.RECOVERY


class TestArchival:

    @pytest.mark.asyncio
    async def test_small_recent_session_stays_ended(self, manager):
        await manager.start_session("s1", "u1")
        await manager.record_turn("s1", user_turn(1))

        state = await manager.end("s1")

        assert state.status == SessionStatus.ENDED

    @pytest.mark.asyncio
    async def test_long_session_archives_on_end(self, manager):
        await manager.start_session("s1", "u1")
        for n in range(1, 26):
            await manager.record_turn("s1", user_turn(n) if n % 2 else agent_turn(n))

        state = await manager.end("s1")

        assert state.status == SessionStatus.ARCHIVED
        last = (await manager.transitions("s1"))[-1]
        assert last.transition_type == TransitionType.ARCHIVAL
        assert last.trigger_source == TriggerSource.SYSTEM

    @pytest.mark.asyncio
    async def test_old_session_archives_on_check(self, manager):
        await manager.start_session("s1", "u1")
        await manager.end("s1")

        assert not await manager.check_archival("s1")
        assert await manager.check_archival("s1", now=datetime.utcnow() + timedelta(hours=3))
        assert (await manager.get("s1")).status == SessionStatus.ARCHIVED

    @pytest.mark.asyncio
    async def test_archive_requires_ended(self, manager):
        await manager.start_session("s1", "u1")
        with pytest.raises(InvalidTransitionError):
            await manager.archive("s1")


class TestDerivedMetrics:

    def test_phase_thresholds(self):
        assert phase_for_turns(0) == ConversationPhase.INITIAL_ASSESSMENT
        assert phase_for_turns(2) == ConversationPhase.INITIAL_ASSESSMENT
        assert phase_for_turns(3) == ConversationPhase.INFORMATION_GATHERING
        assert phase_for_turns(6) == ConversationPhase.ACTIVE_DISCUSSION
        assert phase_for_turns(11) == ConversationPhase.EXTENDED_CONSULTATION
        assert phase_for_turns(21) == ConversationPhase.DEEP_ENGAGEMENT

    @pytest.mark.asyncio
    async def test_phase_never_regresses(self, manager):
        await manager.start_session("s1", "u1")
        seen = []
        for n in list(range(1, 31)) + [4, 2]:
            state = await manager.record_turn("s1", user_turn(n))
            seen.append(PHASE_ORDER.index(state.conversation_phase))

        assert seen == sorted(seen)
        assert state.total_turns == 30
        assert state.conversation_phase == ConversationPhase.DEEP_ENGAGEMENT

    @pytest.mark.asyncio
    async def test_complexity_formula(self, manager):
        await manager.start_session("s1", "u1")
        await manager.record_turn("s1", user_turn(1, tags={"Pain Management"}))
        await manager.record_turn("s1", agent_turn(2, agent="general_health"))
        await manager.record_turn("s1", user_turn(3, tags={"Sleep"}))
        state = await manager.record_turn("s1", agent_turn(4, agent="mental_health"))

        assert state.agent_switches == 1
        assert state.complexity_score == pytest.approx(0.1 + 0.02 * 4 + 0.1 * 2 + 0.05 * 1)
        assert state.primary_topics == {"Pain Management", "Sleep"}
        assert state.agents_used == ["general_health", "mental_health"]

    @pytest.mark.asyncio
    async def test_complexity_is_capped(self, manager):
        await manager.start_session("s1", "u1")
        tags = {"Pain Management", "Sleep", "Digestive", "Treatment"}
        agents = ["a", "b"] * 10
        for n in range(1, 41):
            turn = user_turn(n, tags=tags) if n % 2 else agent_turn(n, agent=agents[n // 2 % len(agents)])
            state = await manager.record_turn("s1", turn)

        assert state.complexity_score == pytest.approx(1.0)
        assert state.is_high_complexity()

    @pytest.mark.asyncio
    async def test_engagement_levels(self, manager):
        await manager.start_session("s1", "u1")
        state = await manager.record_turn("s1", user_turn(1, "short"))
        assert state.engagement_level == EngagementLevel.LOW

        await manager.start_session("s2", "u1")
        medium = "x" * 60
        state = await manager.record_turn("s2", Turn(turn_number=1, session_id="s2", role=TurnRole.USER, raw_text=medium))
        assert state.engagement_level == EngagementLevel.MEDIUM

        await manager.start_session("s3", "u1")
        question = "How should I manage this? " + "detail " * 20 + "What else? Is it serious?"
        state = await manager.record_turn("s3", Turn(turn_number=1, session_id="s3", role=TurnRole.USER, raw_text=question))
        assert state.question_count == 3
        assert state.engagement_level == EngagementLevel.HIGH


class TestQuality:

    @pytest.mark.asyncio
    async def test_quality_is_running_mean_and_trips_attention(self, manager):
        await manager.start_session("s1", "u1")
        await manager.record_turn("s1", user_turn(1))
        await manager.record_turn("s1", agent_turn(2))

        state = await manager.apply_feedback("s1", 2, 0.9)
        assert state.quality_score == pytest.approx(0.9)
        assert not await manager.requires_attention("s1")

        state = await manager.apply_feedback("s1", 4, 0.1)
        assert state.quality_score == pytest.approx(0.5)
        assert "quality_issues" in state.boundary_flags
        assert await manager.requires_attention("s1")

    @pytest.mark.asyncio
    async def test_feedback_is_counted_once_per_turn(self, manager):
        await manager.start_session("s1", "u1")
        await manager.apply_feedback("s1", 2, 0.4)
        state = await manager.apply_feedback("s1", 2, 1.0)
        assert state.quality_score == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_follow_up_flag(self, manager):
        await manager.start_session("s1", "u1")
        assert not await manager.requires_attention("s1")
        await manager.set_follow_up("s1")
        assert await manager.requires_attention("s1")

    @pytest.mark.asyncio
    async def test_archival_boundary_flag(self):
        manager = SessionStateManager(EngineSettings(archival_trigger_turns=4))
        await manager.start_session("s1", "u1")
        for n in range(1, 5):
            state = await manager.record_turn("s1", user_turn(n))
        assert "archival_required" in state.boundary_flags


class TestStateSummary:

    @pytest.mark.asyncio
    async def test_summary_reflects_recorded_turns(self, manager):
        await manager.start_session("s1", "u1")
        await manager.record_turn("s1", user_turn(1, "my back hurts", tags={"Pain Management"}))
        state = await manager.record_turn("s1", agent_turn(2))

        summary = state.get_state_summary()

        assert summary["session_id"] == "s1"
        assert summary["status"] == "ACTIVE"
        assert summary["total_turns"] == 2
        assert summary["topics"] == ["Pain Management"]
        assert summary["last_agent"] == "general_health"

    @pytest.mark.asyncio
    async def test_open_only_while_accepting_turns(self, manager):
        state = await manager.start_session("s1", "u1")
        assert state.is_open()

        await manager.record_turn("s1", user_turn(1))
        assert (await manager.pause("s1")).is_open() is False
        assert (await manager.resume("s1")).is_open()
        assert (await manager.end("s1")).is_open() is False
