import pytest

from conversation_engine.domain.context.state.continuity import ContinuityStore
from conversation_engine.domain.context.state.state_manager import SessionStateManager
from conversation_engine.domain.models.conversation import Turn, TurnRole


async def run_session(manager, session_id, tags, agent="general_health", **end_kwargs):
    await manager.start_session(session_id, "u1")
    await manager.record_turn(session_id, Turn(
        turn_number=1, session_id=session_id, role=TurnRole.USER, raw_text="hi", topic_tags=set(tags),
    ))
    await manager.record_turn(session_id, Turn(
        turn_number=2, session_id=session_id, role=TurnRole.AGENT, raw_text="hello", routed_collaborator=agent,
    ))
    return await manager.end(session_id, **end_kwargs)


@pytest.fixture
def manager(settings):
    return SessionStateManager(settings, continuity=ContinuityStore())


class TestContinuity:

    @pytest.mark.asyncio
    async def test_record_created_lazily_on_first_close(self, manager):
        assert await manager.continuity.get("u1") is None

        await run_session(manager, "s1", {"Sleep"}, final_affect_tag="anxious")

        record = await manager.continuity.get("u1")
        assert record.total_sessions == 1
        assert record.preserved_topic == "Sleep"
        assert record.preserved_affect_tag == "anxious"
        assert record.topic_counts == {"Sleep": 1}
        assert record.agent_counts == {"general_health": 1}

    @pytest.mark.asyncio
    async def test_new_session_is_seeded(self, manager):
        await run_session(manager, "s1", {"Sleep"}, final_affect_tag="low",
                          follow_up_recommendations=["Check sleep diary"])

        state = await manager.start_session("s2", "u1")

        assert state.seeded_topic == "Sleep"
        assert state.seeded_affect_tag == "low"
        assert state.preferred_agents == ["general_health"]
        assert state.requires_follow_up

    @pytest.mark.asyncio
    async def test_patterns_and_resumption(self, manager):
        for i, agent in enumerate(["mental_health", "mental_health", "general_health"]):
            await run_session(manager, f"s{i}", {"Mental Health"}, agent=agent)

        record = await manager.continuity.get("u1")

        assert record.has_established_patterns()
        assert record.topic_counts == {"Mental Health": 3}
        assert record.preferred_agents() == ["mental_health", "general_health"]
        prompt = record.resumption_prompt()
        assert prompt.startswith("Welcome back!")
        assert "Mental Health" in prompt

    @pytest.mark.asyncio
    async def test_inaccessible_summaries_are_kept_but_hidden(self, manager):
        await run_session(manager, "s1", {"Sleep"})
        await run_session(manager, "s2", {"Digestive"})

        assert await manager.continuity.mark_inaccessible("u1", "s2")
        assert not await manager.continuity.mark_inaccessible("u1", "s2")

        record = await manager.continuity.get("u1")
        assert len(record.summaries) == 2
        assert record.most_recent_session().session_id == "s1"

    @pytest.mark.asyncio
    async def test_archive_without_retention_hides_summary(self, manager):
        await run_session(manager, "s1", {"Sleep"})

        state = await manager.archive("s1", retain_for_continuity=False)

        assert not state.accessible_for_continuity
        record = await manager.continuity.get("u1")
        assert record.summaries[0].accessible is False
        assert record.most_recent_session() is None
        assert record.resumption_prompt() == "Welcome! How can I help you today?"

    @pytest.mark.asyncio
    async def test_same_session_is_folded_once(self, manager):
        state = await run_session(manager, "s1", {"Sleep"})

        await manager.continuity.record_session_end(state)

        record = await manager.continuity.get("u1")
        assert record.total_sessions == 1
