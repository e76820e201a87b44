from conversation_engine.domain.models.session import (
    ConversationPhase,
    CrossSessionContinuity,
    EngagementLevel,
    SessionState,
    SessionStatus,
    SessionSummary,
    SessionTransition,
    TransitionType,
    TriggerSource,
    phase_for_turns,
)
from conversation_engine.domain.models.conversation import ConversationHistory, Turn, TurnRole
from conversation_engine.domain.models.context import (
    ContextEnrichment,
    ContextSelectionResult,
    ConversationPatterns,
    ConversationTrends,
    FeedbackResult,
    MemoryBuffers,
    QualityLevel,
    SelectionStrategy,
)
