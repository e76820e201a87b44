from typing import Callable, Dict, List, Optional, Union
from datetime import datetime

import pytest

from conversation_engine.config import EngineSettings
from conversation_engine.domain.context.lexicon import Lexicon
from conversation_engine.domain.context.memory.turn_store import TurnStore
from conversation_engine.domain.models.conversation import ConversationHistory, Turn, TurnRole
from conversation_engine.domain.orchestration.collaborators import (
    CollaboratorBundle,
    StaticProvisioningClient,
    TextCollaborator,
)
from conversation_engine.errors import CollaboratorUnavailableError
from conversation_engine.infrastructure.resilience.retry import RetryPolicy

Reply = Union[str, Callable[[str], str]]


class FakeCollaborator(TextCollaborator):
    """Scripted replies per handle; can fail a handle a number of times"""

    def __init__(self, replies: Optional[Dict[str, Reply]] = None, default: str = "OK"):
        self.replies = dict(replies or {})
        self.default = default
        self.calls: List[Dict[str, str]] = []
        self.failures: Dict[str, int] = {}

    def fail(self, handle: str, times: int = 1000):
        self.failures[handle] = times

    async def send(self, handle: str, prompt: str, sender_id: str) -> str:
        self.calls.append({"handle": handle, "prompt": prompt, "sender_id": sender_id})
        if self.failures.get(handle, 0) > 0:
            self.failures[handle] -= 1
            raise CollaboratorUnavailableError("scripted failure", context={"handle": handle})
        reply = self.replies.get(handle, self.default)
        return reply(prompt) if callable(reply) else reply

    def calls_to(self, handle: str) -> List[Dict[str, str]]:
        return [c for c in self.calls if c["handle"] == handle]


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def make_history(turn_count: int, session_id: str = "s1", text: str = "My head still hurts today") -> ConversationHistory:
    history = ConversationHistory(session_id=session_id, user_id="u1")
    for number in range(1, turn_count + 1):
        role = TurnRole.USER if number % 2 else TurnRole.AGENT
        history.turns.append(Turn(
            turn_number=number,
            session_id=session_id,
            role=role,
            raw_text=text if role == TurnRole.USER else "Thanks for the update, " + "please rest " * 20,
            routed_collaborator=None if role == TurnRole.USER else "general_health",
            created_at=datetime(2024, 1, 1, 12, 0, 0),
        ))
    return history


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def lexicon(settings):
    return Lexicon(settings)


@pytest.fixture
def store():
    return TurnStore()


@pytest.fixture
def bundle():
    return CollaboratorBundle(
        user_id="u1",
        identity_handle="identity-u1",
        context_handle="context-u1",
        intent_handle="intent-u1",
        general_health_handle="general-u1",
        mental_health_handle="mental-u1",
    )


@pytest.fixture
def provisioning(bundle):
    return StaticProvisioningClient({bundle.user_id: bundle})


@pytest.fixture
def collaborator():
    return FakeCollaborator(replies={
        "intent-u1": "GENERAL_HEALTH|0.85",
        "general-u1": "Based on what you described earlier, rest and hydration should definitely help the headache.",
        "mental-u1": "It sounds like stress is weighing on you. Breathing exercises can clearly help.",
        "context-u1": "OK",
    })


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fast_retry(recording_sleep):
    return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=recording_sleep)
