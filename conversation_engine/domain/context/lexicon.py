from typing import Dict, List, Optional, Set
import re

from conversation_engine.config import EngineSettings


WORD_PATTERN = re.compile(r'\w+')
QUESTION_WORDS = {"what", "how", "why", "when", "where", "which", "who", "should", "could", "can", "is", "are", "do", "does"}


class Lexicon:
    """Lexical heuristics shared by tagging, scoring and feedback"""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()
        self.stop_words = {w.lower() for w in self.settings.stop_words}
        self.followup_markers = {w.lower() for w in self.settings.followup_markers}
        self.resolution_markers = {w.lower() for w in self.settings.resolution_markers}
        self._domain_patterns = self._compile(self.settings.domain_terms)
        self._safety_patterns = self._compile(self.settings.safety_terms)
        self._affect_patterns = {
            tag: self._compile(terms) for tag, terms in self.settings.affect_terms.items()
        }
        self._topic_patterns = {
            topic: self._compile(terms) for topic, terms in self.settings.topic_categories.items()
        }

    @staticmethod
    def _compile(terms: List[str]) -> Dict[str, re.Pattern]:
        # Prefix match so "headaches" and "worrying" still count
        return {
            term.lower(): re.compile(r'\b' + re.escape(term.lower()) + r'\w*')
            for term in terms
        }

    @staticmethod
    def tokens(text: str) -> List[str]:
        return WORD_PATTERN.findall((text or "").lower())

    def extract_keywords(self, text: str) -> Set[str]:
        """Lower-cased content words longer than two characters"""
        return {
            token for token in self.tokens(text)
            if len(token) > 2 and token not in self.stop_words and not token.isdigit()
        }

    def _matches(self, patterns: Dict[str, re.Pattern], text: str) -> Set[str]:
        text_lower = (text or "").lower()
        return {term for term, pattern in patterns.items() if pattern.search(text_lower)}

    def domain_terms(self, text: str) -> Set[str]:
        return self._matches(self._domain_patterns, text)

    def safety_terms(self, text: str) -> Set[str]:
        return self._matches(self._safety_patterns, text)

    def is_safety_relevant(self, text: str) -> bool:
        return bool(self.safety_terms(text))

    def affect_terms(self, text: str) -> Set[str]:
        found: Set[str] = set()
        for patterns in self._affect_patterns.values():
            found |= self._matches(patterns, text)
        return found

    def detect_affect(self, text: str) -> Optional[str]:
        """Affect tag with the most matching terms, ties broken by intensity"""
        best_tag = None
        best_key = (0, 0.0)
        for tag, patterns in self._affect_patterns.items():
            hits = len(self._matches(patterns, text))
            if not hits:
                continue
            key = (hits, self.affect_intensity(tag))
            if key > best_key:
                best_tag, best_key = tag, key
        return best_tag

    def affect_intensity(self, tag: Optional[str]) -> float:
        if tag is None:
            return 0.0
        return self.settings.affect_intensity.get(tag, 0.5)

    def topic_tags(self, text: str) -> Set[str]:
        return {
            topic for topic, patterns in self._topic_patterns.items()
            if self._matches(patterns, text)
        }

    def has_followup_marker(self, text: str) -> bool:
        return any(token in self.followup_markers for token in self.tokens(text))

    def has_resolution_marker(self, text: str) -> bool:
        return any(token in self.resolution_markers for token in self.tokens(text))

    def count_questions(self, text: str) -> int:
        """Question marks, or one if the message opens with a question word"""
        marks = (text or "").count("?")
        if marks:
            return marks
        tokens = self.tokens(text)
        return 1 if tokens and tokens[0] in QUESTION_WORDS else 0
