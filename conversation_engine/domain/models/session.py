from typing import Dict, Any, List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    """Session lifecycle status"""
    INITIALIZING = "INITIALIZING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"
    ARCHIVED = "ARCHIVED"
    ERROR = "ERROR"


class ConversationPhase(str, Enum):
    """Phase derived from the total turn count"""
    INITIAL_ASSESSMENT = "INITIAL_ASSESSMENT"
    INFORMATION_GATHERING = "INFORMATION_GATHERING"
    ACTIVE_DISCUSSION = "ACTIVE_DISCUSSION"
    EXTENDED_CONSULTATION = "EXTENDED_CONSULTATION"
    DEEP_ENGAGEMENT = "DEEP_ENGAGEMENT"


PHASE_ORDER = [
    ConversationPhase.INITIAL_ASSESSMENT,
    ConversationPhase.INFORMATION_GATHERING,
    ConversationPhase.ACTIVE_DISCUSSION,
    ConversationPhase.EXTENDED_CONSULTATION,
    ConversationPhase.DEEP_ENGAGEMENT,
]


class EngagementLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TriggerSource(str, Enum):
    """What caused a status transition"""
    USER = "USER"
    SYSTEM = "SYSTEM"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


class TransitionType(str, Enum):
    INITIALIZATION = "INITIALIZATION"
    ACTIVATION = "ACTIVATION"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    TERMINATION = "TERMINATION"
    ARCHIVAL = "ARCHIVAL"
    ERROR = "ERROR"
    RECOVERY = "RECOVERY"


def phase_for_turns(total_turns: int, thresholds=(2, 5, 10, 20)) -> ConversationPhase:
    """Map a turn count onto a conversation phase.

    Each threshold is the last turn count of its phase, so with the defaults
    0-2 turns are INITIAL_ASSESSMENT, 3-5 INFORMATION_GATHERING and so on.
    """
    index = 0
    for threshold in thresholds:
        if total_turns > threshold:
            index += 1
    return PHASE_ORDER[index]


class SessionTransition(BaseModel):
    """Immutable record of one status change"""
    model_config = ConfigDict(frozen=True)

    session_id: str
    from_status: Optional[SessionStatus]
    to_status: SessionStatus
    transition_type: TransitionType
    reason: str
    trigger_source: TriggerSource
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionState(BaseModel):
    """Lifecycle record for one session"""
    session_id: str
    user_id: str
    status: SessionStatus = Field(default=SessionStatus.INITIALIZING)
    conversation_phase: ConversationPhase = Field(default=ConversationPhase.INITIAL_ASSESSMENT)
    total_turns: int = Field(default=0, ge=0)
    complexity_score: float = Field(default=0.1, ge=0.0, le=1.0)
    quality_score: float = Field(default=1.0, ge=0.0, le=1.0)
    engagement_level: EngagementLevel = Field(default=EngagementLevel.LOW)
    primary_topics: Set[str] = Field(default_factory=set)
    current_topic: Optional[str] = None
    last_agent_type: Optional[str] = None
    agents_used: List[str] = Field(default_factory=list)
    agent_switches: int = 0
    user_message_count: int = 0
    average_user_message_length: float = 0.0
    question_count: int = 0
    scored_agent_turns: Set[int] = Field(default_factory=set)
    requires_follow_up: bool = False
    accessible_for_continuity: bool = True
    preserved_context: Optional[str] = None
    closure_reason: Optional[str] = None
    resolution_achieved: bool = False
    follow_up_recommendations: List[str] = Field(default_factory=list)
    boundary_flags: Set[str] = Field(default_factory=set)
    seeded_topic: Optional[str] = None
    seeded_affect_tag: Optional[str] = None
    preferred_agents: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None

    @property
    def duration_minutes(self) -> float:
        return max(0.0, (self.last_updated - self.created_at).total_seconds() / 60.0)

    def requires_attention(self, quality_threshold: float = 0.6) -> bool:
        """Whether an operator should look at this session"""
        return (
            self.requires_follow_up
            or self.quality_score < quality_threshold
            or self.status == SessionStatus.ERROR
        )

    def is_long_running(self, threshold_minutes: float = 60.0) -> bool:
        return self.duration_minutes > threshold_minutes

    def is_high_complexity(self) -> bool:
        return self.complexity_score > 0.7

    def is_open(self) -> bool:
        """Whether new turns may still be recorded"""
        return self.status in (SessionStatus.INITIALIZING, SessionStatus.ACTIVE, SessionStatus.ERROR)

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "phase": self.conversation_phase.value,
            "total_turns": self.total_turns,
            "complexity": round(self.complexity_score, 3),
            "quality": round(self.quality_score, 3),
            "engagement": self.engagement_level.value,
            "topics": sorted(self.primary_topics),
            "last_agent": self.last_agent_type,
            "last_updated": self.last_updated.isoformat(),
        }


class SessionSummary(BaseModel):
    """Condensed record of a closed session kept for continuity"""
    session_id: str
    user_id: str
    started_at: datetime
    ended_at: datetime
    total_turns: int
    primary_topics: List[str] = Field(default_factory=list)
    final_topic: Optional[str] = None
    final_affect_tag: Optional[str] = None
    agents_used: List[str] = Field(default_factory=list)
    quality_score: float = 0.0
    resolution_achieved: bool = False
    requires_follow_up: bool = False
    accessible: bool = True


class CrossSessionContinuity(BaseModel):
    """Per-user aggregate of closed sessions"""
    user_id: str
    summaries: List[SessionSummary] = Field(default_factory=list)
    topic_counts: Dict[str, int] = Field(default_factory=dict)
    agent_counts: Dict[str, int] = Field(default_factory=dict)
    preserved_topic: Optional[str] = None
    preserved_affect_tag: Optional[str] = None
    total_sessions: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    def has_established_patterns(self) -> bool:
        return self.total_sessions >= 3

    def accessible_summaries(self) -> List[SessionSummary]:
        return [s for s in self.summaries if s.accessible]

    def most_recent_session(self) -> Optional[SessionSummary]:
        accessible = self.accessible_summaries()
        return accessible[-1] if accessible else None

    def preferred_agents(self, limit: int = 2) -> List[str]:
        ranked = sorted(self.agent_counts.items(), key=lambda item: (-item[1], item[0]))
        return [name for name, _ in ranked[:limit]]

    def resumption_prompt(self) -> str:
        """Greeting text for a returning user"""
        recent = self.most_recent_session()
        if recent is None:
            return "Welcome! How can I help you today?"
        parts = ["Welcome back!"]
        if recent.final_topic:
            parts.append(f"Last time we talked about {recent.final_topic}.")
        if recent.requires_follow_up:
            parts.append("You mentioned this needed a follow-up, how are things now?")
        else:
            parts.append("How are you feeling today?")
        return " ".join(parts)
