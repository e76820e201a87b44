from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from conversation_engine.domain.models.conversation import Turn
from conversation_engine.domain.models.session import ConversationPhase


class SelectionStrategy(str, Enum):
    """How a context selection result was produced"""
    MULTI_STRATEGY = "MULTI_STRATEGY"
    NO_HISTORY = "NO_HISTORY"
    ERROR_FALLBACK = "ERROR_FALLBACK"


class QualityLevel(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


class ContextSelectionResult(BaseModel):
    """Ranked turn subset handed to a collaborator along with the message"""
    selected_turns: List[Turn] = Field(default_factory=list, description="Ordered by turn number")
    turn_scores: Dict[int, float] = Field(default_factory=dict)
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    strategy: str = Field(default=SelectionStrategy.NO_HISTORY.value)
    reasoning: str = ""
    primary_topic: Optional[str] = None
    follow_up_detected: bool = False
    selected_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def selected_turn_numbers(self) -> List[int]:
        return [t.turn_number for t in self.selected_turns]

    @property
    def is_degraded(self) -> bool:
        return self.strategy == SelectionStrategy.ERROR_FALLBACK.value


class ConversationTrends(BaseModel):
    """Boolean heuristics over turn-to-turn deltas"""
    increasing_complexity: bool = False
    topic_shift: bool = False
    escalating_concern: bool = False
    moving_towards_resolution: bool = False
    trend_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ConversationPatterns(BaseModel):
    """Read-only analytics over the non-archived turn set"""
    topic_frequency: Dict[str, int] = Field(default_factory=dict)
    agent_frequency: Dict[str, int] = Field(default_factory=dict)
    topic_progression: List[str] = Field(default_factory=list)
    emotional_progression: List[str] = Field(default_factory=list)
    conversation_phase: ConversationPhase = Field(default=ConversationPhase.INITIAL_ASSESSMENT)
    trends: ConversationTrends = Field(default_factory=ConversationTrends)

    @property
    def dominant_topic(self) -> Optional[str]:
        if not self.topic_frequency:
            return None
        return max(sorted(self.topic_frequency), key=lambda k: self.topic_frequency[k])


class ContextEnrichment(BaseModel):
    """Selection result, pattern snapshot and rendered prompt for one message"""
    session_id: str
    turn_number: int
    selection: ContextSelectionResult
    patterns: ConversationPatterns
    enriched_message: str


class FeedbackResult(BaseModel):
    """Scores for one agent reply against the context it was given"""
    turn_number: int
    response_quality: float = Field(ge=0.0, le=1.0)
    context_utilization: float = Field(ge=0.0, le=1.0)
    response_context_correlation: float = Field(ge=0.0, le=1.0)
    quality_level: QualityLevel
    context_feedback: Optional[str] = None


class MemoryBuffers(BaseModel):
    """Rendered text blocks for external hand-off"""
    session_id: str
    conversation_history: str
    active_session: str
    context_summary: str
    memory_metadata: str
    rendered_at: datetime = Field(default_factory=datetime.utcnow)

    def as_blocks(self) -> Dict[str, str]:
        return {
            "conversation_history": self.conversation_history,
            "active_session": self.active_session,
            "context_summary": self.context_summary,
            "memory_metadata": self.memory_metadata,
        }
