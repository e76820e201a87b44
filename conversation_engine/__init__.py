from conversation_engine.config import EngineSettings
from conversation_engine.domain.orchestration.core.conversation_engine import ChatResult, ConversationEngine
from conversation_engine.errors import (
    ConversationEngineError,
    ExternalHandoffError,
    OrphanReplyError,
    SessionClosedError,
    UnknownSessionError,
)

__version__ = "0.1.0"
