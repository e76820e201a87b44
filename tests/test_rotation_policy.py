import pytest

from conversation_engine.config import EngineSettings
from conversation_engine.domain.context.memory.rotation_policy import RotationPolicy
from conversation_engine.domain.context.memory.turn_store import TurnStore


async def fill(store, count, session_id="s1", text="How is the headache today?"):
    for i in range(count):
        if i % 2:
            await store.append_agent_reply(session_id, "general_health", "Keep resting and drink water.")
        else:
            await store.append_user(session_id, "u1", text)


class BrokenLockStore(TurnStore):
    def locked(self, session_id):
        raise RuntimeError("lock unavailable")


class TestTrigger:

    @pytest.mark.asyncio
    async def test_turn_count_trigger(self, store, settings):
        policy = RotationPolicy(store, settings=settings)

        await fill(store, 49)
        assert not policy.is_rotation_needed(await store.get("s1"))

        await fill(store, 1)
        assert policy.is_rotation_needed(await store.get("s1"))

    @pytest.mark.asyncio
    async def test_occupancy_trigger(self, store):
        settings = EngineSettings(conversation_history_limit=2000)
        policy = RotationPolicy(store, settings=settings)

        await fill(store, 4, text="word " * 60)
        assert not policy.is_rotation_needed(await store.get("s1"))

        await fill(store, 6, text="word " * 60)
        assert policy.is_rotation_needed(await store.get("s1"))


class TestPerform:

    @pytest.mark.asyncio
    async def test_rotation_archives_oldest_quarter(self, store, settings):
        policy = RotationPolicy(store, settings=settings)
        await fill(store, 55)

        archived = await policy.perform_rotation("s1")

        assert archived == list(range(1, 14))
        history = await store.get("s1")
        assert history.total_turns == 55
        assert len(history.active_turns()) == 42
        assert [t.turn_number for t in history.turns] == list(range(1, 56))

    @pytest.mark.asyncio
    async def test_rotation_is_idempotent(self, store, settings):
        policy = RotationPolicy(store, settings=settings)
        await fill(store, 55)

        await policy.perform_rotation("s1")
        first = {t.turn_number for t in (await store.get("s1")).archived_turns()}
        again = await policy.perform_rotation("s1")
        second = {t.turn_number for t in (await store.get("s1")).archived_turns()}

        assert again == []
        assert first == second

    @pytest.mark.asyncio
    async def test_maybe_rotate_skips_when_not_needed(self, store, settings):
        policy = RotationPolicy(store, settings=settings)
        await fill(store, 10)

        assert await policy.maybe_rotate("s1") == []
        assert (await store.get("s1")).archived_turns() == []

    @pytest.mark.asyncio
    async def test_unknown_session_is_a_no_op(self, store, settings):
        policy = RotationPolicy(store, settings=settings)
        assert await policy.perform_rotation("missing") == []

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, settings):
        store = BrokenLockStore()
        await fill(store, 55)
        policy = RotationPolicy(store, settings=settings)

        assert await policy.perform_rotation("s1") is None

        history = await store.get("s1")
        assert history.archived_turns() == []
        turn = await store.append_user("s1", "u1", "still ingesting")
        assert turn.turn_number == 56
