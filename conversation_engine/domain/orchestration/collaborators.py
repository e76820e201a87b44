"""Boundary to the external text-generation and provisioning services.

The engine only ever sends a prompt string with a sender identity and gets
a reply string back. Handles are opaque and owned by the provisioning side.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import asyncio

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage
from pydantic import BaseModel

from conversation_engine.config import EngineSettings
from conversation_engine.errors import CollaboratorUnavailableError

logger = structlog.get_logger(__name__)

GENERAL_HEALTH = "GENERAL_HEALTH"
MENTAL_HEALTH = "MENTAL_HEALTH"
EMERGENCY = "EMERGENCY"


class CollaboratorBundle(BaseModel):
    """Per-user handles supplied by provisioning"""
    user_id: str
    identity_handle: str
    context_handle: str
    intent_handle: str
    general_health_handle: str
    mental_health_handle: str

    def reply_handle(self, intent: str) -> str:
        """Domain collaborator for an intent; emergencies go to general health"""
        if intent == MENTAL_HEALTH:
            return self.mental_health_handle
        return self.general_health_handle


class ProvisioningClient(ABC):
    """Supplies ready-made collaborator bundles; never created by the engine"""

    @abstractmethod
    async def get_bundle(self, user_id: str) -> CollaboratorBundle:
        pass


class StaticProvisioningClient(ProvisioningClient):
    """Bundles registered up front, keyed by user id"""

    def __init__(self, bundles: Optional[Dict[str, CollaboratorBundle]] = None):
        self.bundles = dict(bundles or {})

    def register(self, bundle: CollaboratorBundle):
        self.bundles[bundle.user_id] = bundle

    async def get_bundle(self, user_id: str) -> CollaboratorBundle:
        try:
            return self.bundles[user_id]
        except KeyError:
            raise LookupError(f"No collaborator bundle provisioned for user {user_id}")


class TextCollaborator(ABC):
    """Sends one prompt to a collaborator handle and returns its reply"""

    @abstractmethod
    async def send(self, handle: str, prompt: str, sender_id: str) -> str:
        pass


class ChatModelCollaborator(TextCollaborator):
    """Collaborator backed by langchain chat models, one per handle"""

    def __init__(self, models: Dict[str, BaseChatModel], timeout: float = 30.0):
        self.models = models
        self.timeout = timeout

    @classmethod
    def from_settings(cls, models: Dict[str, BaseChatModel], settings: EngineSettings) -> "ChatModelCollaborator":
        return cls(models, timeout=settings.collaborator_timeout)

    async def send(self, handle: str, prompt: str, sender_id: str) -> str:
        model = self.models.get(handle)
        if model is None:
            raise CollaboratorUnavailableError("Unknown collaborator handle", context={"handle": handle})

        try:
            response = await asyncio.wait_for(
                model.ainvoke([HumanMessage(content=prompt, name=sender_id)]),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise CollaboratorUnavailableError(
                "Collaborator timed out",
                context={"handle": handle, "timeout": self.timeout},
            )

        content = response.content if isinstance(response.content, str) else str(response.content)
        if not content.strip():
            raise CollaboratorUnavailableError("Collaborator returned an empty reply", context={"handle": handle})
        return content
