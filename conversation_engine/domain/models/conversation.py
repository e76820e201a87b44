from typing import List, Optional, Set
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from conversation_engine.domain.models.session import SessionStatus


class TurnRole(str, Enum):
    """Author of a turn"""
    USER = "USER"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


class Turn(BaseModel):
    """One user or collaborator utterance"""
    turn_number: int = Field(frozen=True, ge=1, description="Session-unique, assigned by the turn store")
    session_id: str = Field(frozen=True)
    role: TurnRole = Field(frozen=True)
    raw_text: str = Field(frozen=True)
    enriched_text: Optional[str] = Field(None, description="Set once context selection has processed the turn")
    routed_collaborator: Optional[str] = None
    classified_intent: Optional[str] = None
    intent_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    topic_tags: Set[str] = Field(default_factory=set)
    affect_tag: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    archived: bool = Field(default=False, description="Set only by rotation")

    # Feedback, AGENT turns only
    response_quality: Optional[float] = Field(None, ge=0.0, le=1.0)
    context_utilization: Optional[float] = Field(None, ge=0.0, le=1.0)
    response_context_correlation: Optional[float] = Field(None, ge=0.0, le=1.0)
    context_feedback: Optional[str] = None

    @property
    def has_feedback(self) -> bool:
        return self.response_context_correlation is not None


class ConversationHistory(BaseModel):
    """Ordered turn log for one session"""
    session_id: str
    user_id: str
    status: SessionStatus = Field(default=SessionStatus.INITIALIZING)
    turns: List[Turn] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total_turns(self) -> int:
        """Archived and active turns together"""
        return len(self.turns)

    @property
    def next_turn_number(self) -> int:
        return len(self.turns) + 1

    def active_turns(self) -> List[Turn]:
        """Non-archived turns in turn-number order"""
        return [t for t in self.turns if not t.archived]

    def archived_turns(self) -> List[Turn]:
        return [t for t in self.turns if t.archived]

    def get_turn(self, turn_number: int) -> Optional[Turn]:
        if 1 <= turn_number <= len(self.turns):
            return self.turns[turn_number - 1]
        return None

    def has_user_turn(self) -> bool:
        return any(t.role == TurnRole.USER for t in self.turns)

    def last_turn(self, role: Optional[TurnRole] = None) -> Optional[Turn]:
        """Most recent turn, optionally restricted to one role"""
        for turn in reversed(self.turns):
            if role is None or turn.role == role:
                return turn
        return None

    def touch(self):
        """Update last activity timestamp"""
        self.last_updated = datetime.utcnow()
