from typing import Dict, List, Optional, Tuple
from collections import Counter
import time

import structlog

from conversation_engine.config import EngineSettings
from conversation_engine.domain.context.lexicon import Lexicon
from conversation_engine.domain.context.memory.turn_store import TurnStore
from conversation_engine.domain.context.strategies import (
    MessageFeatures,
    ScoringStrategy,
    default_strategies,
)
from conversation_engine.domain.models.context import (
    ContextEnrichment,
    ContextSelectionResult,
    ConversationPatterns,
    ConversationTrends,
    SelectionStrategy,
)
from conversation_engine.domain.models.conversation import ConversationHistory, Turn, TurnRole
from conversation_engine.domain.models.session import ConversationPhase, phase_for_turns
from conversation_engine.infrastructure.observability.logging import engine_logger, metrics

logger = structlog.get_logger(__name__)

CONTEXT_EXCERPT_CHARS = 120


class ContextSelector:
    """Picks the prior turns worth sending with the current message.

    Runs every scoring strategy over the non-archived turns before the
    current one and combines their scores into a ranked subset with a
    confidence value. Never raises: faults degrade to a fallback result.
    """

    def __init__(
        self,
        store: TurnStore,
        settings: Optional[EngineSettings] = None,
        lexicon: Optional[Lexicon] = None,
        strategies: Optional[List[ScoringStrategy]] = None,
    ):
        self.settings = settings or EngineSettings()
        self.store = store
        self.lexicon = lexicon or Lexicon(self.settings)
        self.strategies = strategies if strategies is not None else default_strategies(self.lexicon)

    async def select(
        self,
        session_id: str,
        message: str,
        current_turn_number: int,
        phase: Optional[ConversationPhase] = None,
    ) -> ContextEnrichment:
        """Select context for a message about to be forwarded"""

        started = time.perf_counter()
        try:
            history = await self.store.get(session_id)
            enrichment = self.select_from_history(session_id, history, message, current_turn_number, phase)
        except Exception as e:
            logger.error("Context selection failed", session_id=session_id, error=str(e), exc_info=True)
            metrics.increment_counter("context_selection.fallback")
            enrichment = self.fallback(session_id, message, current_turn_number, str(e))

        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_latency("context_selection", duration_ms)
        engine_logger.log_context_selection(
            session_id=session_id,
            turn_number=current_turn_number,
            strategy=enrichment.selection.strategy,
            confidence=enrichment.selection.confidence_score,
            selected=len(enrichment.selection.selected_turns),
            duration_ms=round(duration_ms, 3),
        )
        return enrichment

    def select_from_history(
        self,
        session_id: str,
        history: Optional[ConversationHistory],
        message: str,
        current_turn_number: int,
        phase: Optional[ConversationPhase] = None,
    ) -> ContextEnrichment:
        """Synchronous core of ``select``; may raise, ``select`` guards it"""

        active = history.active_turns() if history is not None else []
        candidates = [
            t for t in active
            if t.turn_number < current_turn_number and t.role != TurnRole.SYSTEM
        ]
        if phase is None:
            phase = phase_for_turns(history.total_turns if history else 0, self.settings.phase_thresholds)

        features = self.extract_features(message, current_turn_number, candidates)
        patterns = self.analyze_patterns(candidates, phase)

        scored = self.score_candidates(candidates, features)
        if not scored:
            selection = self.no_history_result(features)
        else:
            selection = self.rank(scored, features, patterns)

        return ContextEnrichment(
            session_id=session_id,
            turn_number=current_turn_number,
            selection=selection,
            patterns=patterns,
            enriched_message=self.build_enriched_message(features, selection, patterns, candidates),
        )

    def extract_features(self, message: str, current_turn_number: int, candidates: List[Turn]) -> MessageFeatures:
        lex = self.lexicon
        return MessageFeatures(
            text=message,
            current_turn_number=current_turn_number,
            candidates=candidates,
            keywords=lex.extract_keywords(message),
            topic_tags=lex.topic_tags(message),
            domain_terms=lex.domain_terms(message),
            affect_terms=lex.affect_terms(message),
            affect_tag=lex.detect_affect(message),
            explicit_followup=lex.has_followup_marker(message),
        )

    def score_candidates(self, candidates: List[Turn], features: MessageFeatures) -> Dict[int, Tuple[float, List[str]]]:
        """Combined score and contributing strategy names per turn number"""

        for strategy in self.strategies:
            strategy.prepare(features)

        scored: Dict[int, Tuple[float, List[str]]] = {}
        for turn in candidates:
            total = 0.0
            contributors = []
            for strategy in self.strategies:
                raw = strategy.score(turn, features)
                if raw <= 0.0:
                    continue
                total += strategy.weight * min(raw, 1.0)
                contributors.append(strategy.name)
            if not contributors:
                continue
            combined = min(total / len(contributors), 1.0)
            if combined >= self.settings.minimum_relevance:
                scored[turn.turn_number] = (combined, contributors)
        return scored

    def rank(
        self,
        scored: Dict[int, Tuple[float, List[str]]],
        features: MessageFeatures,
        patterns: ConversationPatterns,
    ) -> ContextSelectionResult:
        by_number = {t.turn_number: t for t in features.candidates}
        ranked = sorted(scored.items(), key=lambda item: (-item[1][0], -item[0]))
        top = ranked[: self.settings.max_relevant_turns]
        # Narrative order for the collaborator
        top.sort(key=lambda item: item[0])

        selected = [by_number[number] for number, _ in top]
        scores = {number: round(score, 4) for number, (score, _) in top}
        average = sum(scores.values()) / len(scores)

        stable_topic = self.stable_topic(features.candidates)
        boost = 0.0
        if stable_topic:
            boost += self.settings.pattern_boost
        if features.explicit_followup:
            boost += self.settings.pattern_boost
        confidence = max(0.0, min(1.0, average + boost))

        signals = sorted({name for _, (_, names) in top for name in names})
        reasoning = "Selected %d of %d turns (avg relevance %.2f); signals: %s" % (
            len(selected), len(features.candidates), average, ", ".join(signals),
        )
        if features.explicit_followup:
            reasoning += "; follow-up detected"
        if stable_topic:
            reasoning += "; stable topic %s" % stable_topic

        return ContextSelectionResult(
            selected_turns=selected,
            turn_scores=scores,
            confidence_score=confidence,
            strategy=SelectionStrategy.MULTI_STRATEGY.value,
            reasoning=reasoning,
            primary_topic=stable_topic or patterns.dominant_topic,
            follow_up_detected=features.explicit_followup,
        )

    def no_history_result(self, features: MessageFeatures) -> ContextSelectionResult:
        """Confidence from the message content alone"""
        confidence = 0.3
        if features.keywords:
            confidence += 0.1
        if features.domain_terms:
            confidence += 0.1
        if features.affect_terms:
            confidence += 0.1
        confidence = min(confidence, 0.6)
        topic = sorted(features.topic_tags)[0] if features.topic_tags else None
        return ContextSelectionResult(
            confidence_score=confidence,
            strategy=SelectionStrategy.NO_HISTORY.value,
            reasoning="No prior turns qualified; confidence from message content only",
            primary_topic=topic,
            follow_up_detected=features.explicit_followup,
        )

    def fallback(self, session_id: str, message: str, current_turn_number: int, error: str) -> ContextEnrichment:
        """Degraded result used when selection itself failed"""
        selection = ContextSelectionResult(
            confidence_score=0.0,
            strategy=SelectionStrategy.ERROR_FALLBACK.value,
            reasoning="Context selection unavailable: %s" % error,
        )
        return ContextEnrichment(
            session_id=session_id,
            turn_number=current_turn_number,
            selection=selection,
            patterns=ConversationPatterns(),
            enriched_message="CURRENT_MESSAGE: %s\nCONTEXT_CONFIDENCE: 0.00" % message,
        )

    def stable_topic(self, candidates: List[Turn]) -> Optional[str]:
        """Topic tag shared by at least three of the most recent turns"""
        recent = candidates[-self.settings.recent_turns_window:]
        counts = Counter(tag for turn in recent for tag in turn.topic_tags)
        if not counts:
            return None
        topic, count = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[0]
        return topic if count >= 3 else None

    def analyze_patterns(self, turns: List[Turn], phase: ConversationPhase) -> ConversationPatterns:
        topic_frequency: Counter = Counter()
        agent_frequency: Counter = Counter()
        topic_progression: List[str] = []
        emotional_progression: List[str] = []

        for turn in turns:
            tags = turn.topic_tags or self.lexicon.topic_tags(turn.raw_text)
            topic_frequency.update(tags)
            if tags:
                lead = sorted(tags)[0]
                if not topic_progression or topic_progression[-1] != lead:
                    topic_progression.append(lead)
            if turn.role == TurnRole.AGENT and turn.routed_collaborator:
                agent_frequency[turn.routed_collaborator] += 1
            if turn.affect_tag:
                emotional_progression.append(turn.affect_tag)

        return ConversationPatterns(
            topic_frequency=dict(topic_frequency),
            agent_frequency=dict(agent_frequency),
            topic_progression=topic_progression,
            emotional_progression=emotional_progression,
            conversation_phase=phase,
            trends=self.analyze_trends(turns),
        )

    def analyze_trends(self, turns: List[Turn]) -> ConversationTrends:
        if len(turns) < 4:
            return ConversationTrends()

        user_turns = [t for t in turns if t.role == TurnRole.USER] or turns
        lengths = [len(t.raw_text) for t in user_turns]
        half = len(lengths) // 2
        early = lengths[:half] or lengths
        late = lengths[half:]
        increasing_complexity = (sum(late) / len(late)) > 1.2 * (sum(early) / len(early))

        topic_shift = False
        if len(user_turns) >= 2:
            previous = self.lexicon.extract_keywords(user_turns[-2].raw_text)
            latest = self.lexicon.extract_keywords(user_turns[-1].raw_text)
            union = previous | latest
            overlap = len(previous & latest) / len(union) if union else 1.0
            tags_changed = user_turns[-1].topic_tags != user_turns[-2].topic_tags
            topic_shift = overlap < 0.2 and tags_changed

        intensities = [self.lexicon.affect_intensity(t.affect_tag) for t in user_turns if t.affect_tag]
        escalating_concern = (
            len(intensities) >= 2 and intensities[-1] > intensities[0]
        ) or self.lexicon.is_safety_relevant(user_turns[-1].raw_text)
        moving_towards_resolution = self.lexicon.has_resolution_marker(user_turns[-1].raw_text) or (
            len(intensities) >= 2 and intensities[-1] < intensities[0]
        )

        return ConversationTrends(
            increasing_complexity=increasing_complexity,
            topic_shift=topic_shift,
            escalating_concern=escalating_concern,
            moving_towards_resolution=moving_towards_resolution and not escalating_concern,
            trend_confidence=min(1.0, len(turns) / 10.0),
        )

    def build_enriched_message(
        self,
        features: MessageFeatures,
        selection: ContextSelectionResult,
        patterns: ConversationPatterns,
        candidates: List[Turn],
    ) -> str:
        """Prompt block forwarded to collaborators"""

        lines = ["CURRENT_MESSAGE: %s" % features.text]
        if selection.selected_turns:
            lines.append("RELEVANT_CONTEXT:")
            for turn in selection.selected_turns:
                text = " ".join(turn.raw_text.split())
                if len(text) > CONTEXT_EXCERPT_CHARS:
                    text = text[:CONTEXT_EXCERPT_CHARS] + "..."
                lines.append("- Turn %d (%s, relevance %.2f): %s" % (
                    turn.turn_number, turn.role.value, selection.turn_scores.get(turn.turn_number, 0.0), text,
                ))
        if patterns.topic_frequency:
            lines.append("TOPIC_CONTEXT: %s" % ", ".join(
                "%s(%d)" % (topic, count) for topic, count in sorted(patterns.topic_frequency.items())
            ))
        if features.domain_terms:
            lines.append("DOMAIN_CONTEXT: %s" % ", ".join(sorted(features.domain_terms)))
        if features.affect_tag or patterns.emotional_progression:
            progression = " -> ".join(patterns.emotional_progression[-5:]) or "none"
            lines.append("AFFECT_CONTEXT: current=%s progression=%s" % (features.affect_tag or "neutral", progression))
        lines.append("CONVERSATION_FLOW: phase=%s follow_up=%s" % (
            patterns.conversation_phase.value, "yes" if selection.follow_up_detected else "no",
        ))

        feedback = self.latest_feedback(candidates)
        if feedback:
            lines.append("PREVIOUS_FEEDBACK: %s" % feedback)
        lines.append("CONTEXT_CONFIDENCE: %.2f" % selection.confidence_score)
        lines.append("CONTEXT_REASONING: %s" % selection.reasoning)
        return "\n".join(lines)

    @staticmethod
    def latest_feedback(candidates: List[Turn]) -> Optional[str]:
        """Advisory note left on the most recent scored agent turn"""
        for turn in reversed(candidates):
            if turn.role == TurnRole.AGENT and turn.has_feedback:
                return turn.context_feedback
        return None
