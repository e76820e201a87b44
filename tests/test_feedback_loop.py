import pytest

from conversation_engine.domain.context.feedback_loop import NEUTRAL_UTILIZATION, FeedbackLoop, quality_level
from conversation_engine.domain.context.state.state_manager import SessionStateManager
from conversation_engine.domain.models.context import ContextSelectionResult, QualityLevel
from conversation_engine.domain.models.conversation import Turn, TurnRole

CONTEXT_TURN = Turn(turn_number=1, session_id="s1", role=TurnRole.USER, raw_text="I have a headache behind my eyes")
GOOD_REPLY = "Based on what you said earlier, the headache behind your eyes sounds like tension. Rest will definitely help."


@pytest.fixture
def manager(settings):
    return SessionStateManager(settings)


@pytest.fixture
def loop(store, manager):
    return FeedbackLoop(store, manager)


def selection(confidence, turns=None):
    return ContextSelectionResult(
        selected_turns=turns or [],
        confidence_score=confidence,
        strategy="MULTI_STRATEGY" if turns else "NO_HISTORY",
    )


class TestEvaluate:

    def test_well_grounded_reply_gets_no_note(self, loop):
        result = loop.evaluate(2, "my headache is bad", GOOD_REPLY, selection(0.8, [CONTEXT_TURN]))

        assert result.context_utilization == pytest.approx(1.0)
        assert result.response_quality >= 0.8
        assert result.quality_level == QualityLevel.EXCELLENT
        assert result.context_feedback is None

    def test_low_confidence_emits_note(self, loop):
        result = loop.evaluate(2, "my headache is bad", GOOD_REPLY, selection(0.4, [CONTEXT_TURN]))

        assert "low context confidence may have limited specificity" in result.context_feedback

    def test_ignored_context_emits_note(self, loop):
        reply = "Maybe try some water, not sure. Could you tell me more?"
        result = loop.evaluate(2, "my headache is bad", reply, selection(0.9, [CONTEXT_TURN]))

        assert result.context_utilization < 0.6
        assert "limited use of the supplied context" in result.context_feedback
        assert "asked for more information" in result.context_feedback

    def test_timeline_hint(self, loop):
        reply = "How long have you had it?"
        result = loop.evaluate(2, "headache", reply, selection(0.3))

        assert "timeline context would help" in result.context_feedback

    def test_no_context_uses_neutral_utilization(self, loop):
        result = loop.evaluate(2, "hello", "Hello! How can I help you today with your health?", selection(0.5))
        assert result.context_utilization == NEUTRAL_UTILIZATION

    def test_vague_short_reply_scores_lower(self, loop):
        vague = loop.response_quality("my headache is bad", "maybe")
        confident = loop.response_quality("my headache is bad", GOOD_REPLY)
        assert vague < confident
        assert vague == pytest.approx(0.5)

    def test_correlation_is_harmonic(self):
        assert FeedbackLoop.correlation(0.8, 0.4) == pytest.approx(2 * 0.8 * 0.4 / 1.2)
        assert FeedbackLoop.correlation(0.0, 0.0) == 0.0

    def test_quality_levels(self):
        assert quality_level(0.85) == QualityLevel.EXCELLENT
        assert quality_level(0.6) == QualityLevel.GOOD
        assert quality_level(0.45) == QualityLevel.FAIR
        assert quality_level(0.1) == QualityLevel.POOR


class TestApply:

    @pytest.mark.asyncio
    async def test_scores_persist_on_turn_and_session(self, loop, store, manager):
        await manager.start_session("s1", "u1")
        await store.append_user("s1", "u1", "I have a headache behind my eyes")
        agent = await store.append_agent_reply("s1", "general_health", GOOD_REPLY)

        result = await loop.apply("s1", agent, "my headache is bad", selection(0.8, [CONTEXT_TURN]))

        stored = (await store.get("s1")).get_turn(agent.turn_number)
        assert stored.response_quality == result.response_quality
        assert stored.response_context_correlation == result.response_context_correlation
        state = await manager.get("s1")
        assert state.quality_score == pytest.approx(result.response_context_correlation)
        assert agent.turn_number in state.scored_agent_turns
