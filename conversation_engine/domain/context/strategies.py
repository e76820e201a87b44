"""Pluggable relevance scoring strategies.

Each strategy scores one candidate turn against the current message in
[0, 1]. The selector combines them; a strategy that returns 0 for a turn
simply does not take part in that turn's average.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from conversation_engine.domain.context.lexicon import Lexicon
from conversation_engine.domain.models.conversation import Turn


class MessageFeatures(BaseModel):
    """Lexical features of the current message plus the candidate set"""
    text: str
    current_turn_number: int
    candidates: List[Turn] = Field(default_factory=list)
    keywords: Set[str] = Field(default_factory=set)
    topic_tags: Set[str] = Field(default_factory=set)
    domain_terms: Set[str] = Field(default_factory=set)
    affect_terms: Set[str] = Field(default_factory=set)
    affect_tag: Optional[str] = None
    explicit_followup: bool = False
    scratch: Dict[str, Any] = Field(default_factory=dict)


class ScoringStrategy(ABC):
    """Base class for relevance strategies"""

    name: str = "base"

    def __init__(self, lexicon: Lexicon, weight: float):
        self.lexicon = lexicon
        self.weight = weight

    def prepare(self, message: MessageFeatures):
        """Hook run once per selection before any turn is scored"""
        pass

    @abstractmethod
    def score(self, turn: Turn, message: MessageFeatures) -> float:
        """Relevance of one turn to the current message, in [0, 1]"""
        pass

    def turn_keywords(self, turn: Turn, message: MessageFeatures) -> Set[str]:
        cache = message.scratch.setdefault("keywords", {})
        if turn.turn_number not in cache:
            cache[turn.turn_number] = self.lexicon.extract_keywords(turn.raw_text)
        return cache[turn.turn_number]

    def turn_tags(self, turn: Turn, message: MessageFeatures) -> Set[str]:
        """Stored topic tags, or tags derived from the text for untagged turns"""
        if turn.topic_tags:
            return turn.topic_tags
        cache = message.scratch.setdefault("tags", {})
        if turn.turn_number not in cache:
            cache[turn.turn_number] = self.lexicon.topic_tags(turn.raw_text)
        return cache[turn.turn_number]


class RecencyStrategy(ScoringStrategy):
    """Linear decay over the last few turns"""

    name = "recency"

    def __init__(self, lexicon: Lexicon, weight: float, window: int = 5):
        super().__init__(lexicon, weight)
        self.window = window

    def score(self, turn: Turn, message: MessageFeatures) -> float:
        distance = message.current_turn_number - turn.turn_number
        if distance < 1 or distance > self.window:
            return 0.0
        return max(0.1, 1.0 - 0.1 * distance)


class TopicStrategy(ScoringStrategy):
    """Jaccard keyword overlap plus a bonus for a shared topic tag"""

    name = "topic"

    def __init__(self, lexicon: Lexicon, weight: float, tag_bonus: float = 0.3):
        super().__init__(lexicon, weight)
        self.tag_bonus = tag_bonus

    def score(self, turn: Turn, message: MessageFeatures) -> float:
        turn_keywords = self.turn_keywords(turn, message)
        union = turn_keywords | message.keywords
        score = len(turn_keywords & message.keywords) / len(union) if union else 0.0
        if self.turn_tags(turn, message) & message.topic_tags:
            score += self.tag_bonus
        return min(score, 1.0)


class DomainKeywordStrategy(ScoringStrategy):
    """Shared domain vocabulary, weighted up for safety-relevant turns"""

    name = "domain"
    safety_multiplier = 1.5

    def score(self, turn: Turn, message: MessageFeatures) -> float:
        if not message.domain_terms:
            return 0.0
        turn_terms = self.lexicon.domain_terms(turn.raw_text)
        overlap = turn_terms & message.domain_terms
        if not overlap:
            return 0.0
        score = len(overlap) / len(message.domain_terms)
        if self.lexicon.is_safety_relevant(turn.raw_text):
            score *= self.safety_multiplier
        return min(score, 1.0)


class AffectStrategy(ScoringStrategy):
    """Shared affect terms plus a bonus when the affect tag carries over"""

    name = "affect"

    def __init__(self, lexicon: Lexicon, weight: float, continuity_bonus: float = 0.2):
        super().__init__(lexicon, weight)
        self.continuity_bonus = continuity_bonus

    def score(self, turn: Turn, message: MessageFeatures) -> float:
        score = 0.0
        if message.affect_terms:
            overlap = self.lexicon.affect_terms(turn.raw_text) & message.affect_terms
            score = len(overlap) / len(message.affect_terms)
        if message.affect_tag and turn.affect_tag == message.affect_tag:
            score += self.continuity_bonus
        return min(score, 1.0)


class FollowUpStrategy(ScoringStrategy):
    """Sharp boost for the turns a follow-up message refers back to.

    Contributes nothing unless the message carries a referential marker
    such as "still" or "again".
    """

    name = "followup"

    def prepare(self, message: MessageFeatures):
        ranks: Dict[int, int] = {}
        if message.explicit_followup:
            preceding = message.current_turn_number - 1
            rank = 0
            for turn in sorted(message.candidates, key=lambda t: t.turn_number, reverse=True):
                if turn.turn_number >= preceding:
                    continue
                if self._shares_topic(turn, message):
                    ranks[turn.turn_number] = rank
                    rank += 1
        message.scratch["followup_ranks"] = ranks

    def _shares_topic(self, turn: Turn, message: MessageFeatures) -> bool:
        if self.turn_tags(turn, message) & message.topic_tags:
            return True
        return bool(self.turn_keywords(turn, message) & message.keywords)

    def score(self, turn: Turn, message: MessageFeatures) -> float:
        if not message.explicit_followup:
            return 0.0
        if turn.turn_number == message.current_turn_number - 1:
            return 1.0
        rank = message.scratch.get("followup_ranks", {}).get(turn.turn_number)
        if rank is None:
            return 0.0
        return max(0.5, 0.9 - 0.1 * rank)


def default_strategies(lexicon: Lexicon) -> List[ScoringStrategy]:
    """The five built-in strategies with weights from settings"""
    settings = lexicon.settings
    return [
        RecencyStrategy(lexicon, settings.recency_weight, window=settings.recent_turns_window),
        TopicStrategy(lexicon, settings.topic_weight, tag_bonus=settings.topic_tag_bonus),
        DomainKeywordStrategy(lexicon, settings.domain_weight),
        AffectStrategy(lexicon, settings.affect_weight, continuity_bonus=settings.affect_continuity_bonus),
        FollowUpStrategy(lexicon, settings.followup_weight),
    ]
