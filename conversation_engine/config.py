"""Engine configuration using Pydantic Settings.

Every value can be overridden through environment variables carrying the
``CONVERSATION_ENGINE_`` prefix, a ``.env`` file, or explicit kwargs.

Environment variables (selection):
    CONVERSATION_ENGINE_CONVERSATION_HISTORY_LIMIT: Verbatim buffer size
    CONVERSATION_ENGINE_ROTATION_THRESHOLD: Buffer occupancy that triggers rotation
    CONVERSATION_ENGINE_ARCHIVAL_TRIGGER_TURNS: Turn count that triggers rotation
    CONVERSATION_ENGINE_HANDOFF_MAX_ATTEMPTS: External memory update attempts
    CONVERSATION_ENGINE_LOG_LEVEL: Logging level
"""

from typing import Dict, List, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DOMAIN_TERMS = [
    "pain", "headache", "fever", "symptom", "medication", "doctor",
    "hospital", "treatment", "diagnosis", "prescription", "illness",
    "disease", "injury", "blood", "pressure", "heart", "chest", "stomach",
    "back", "leg", "arm", "nausea", "dizzy", "migraine", "severity",
    "sleep", "breath",
]

DEFAULT_SAFETY_TERMS = [
    "chest", "breath", "blood", "suicide", "overdose", "unconscious",
    "emergency", "faint", "seizure",
]

DEFAULT_AFFECT_TERMS = {
    "anxious": ["anxious", "worried", "stressed", "scared", "nervous", "panic"],
    "low": ["depressed", "sad", "upset", "hopeless", "lonely", "mood"],
    "frustrated": ["angry", "frustrated", "annoyed", "irritated"],
    "calm": ["calm", "relaxed", "happy", "relieved"],
}

DEFAULT_AFFECT_INTENSITY = {
    "calm": 0.1,
    "frustrated": 0.6,
    "anxious": 0.7,
    "low": 0.8,
}

DEFAULT_FOLLOWUP_MARKERS = [
    "still", "again", "more", "worse", "better", "continue", "update",
    "follow", "now", "today", "yesterday", "since", "after",
]

DEFAULT_RESOLUTION_MARKERS = [
    "better", "thanks", "thank", "resolved", "helped", "improving", "fine",
]

DEFAULT_STOP_WORDS = [
    "the", "and", "but", "for", "are", "you", "have", "that", "with",
    "this", "was", "what", "can", "not", "has", "had", "from",
]

DEFAULT_TOPIC_CATEGORIES = {
    "Pain Management": ["pain", "ache", "headache", "migraine", "hurt", "sore", "severity"],
    "Mental Health": ["anxious", "anxiety", "stress", "depress", "mood", "panic", "worried"],
    "Treatment": ["medication", "treatment", "prescription", "therapy", "dose", "pill"],
    "Sleep": ["sleep", "insomnia", "tired", "fatigue", "rest"],
    "Cardiovascular": ["heart", "chest", "pressure", "pulse", "palpitation"],
    "Digestive": ["stomach", "nausea", "vomit", "digest", "bowel"],
    "Respiratory": ["breath", "cough", "lung", "wheez", "asthma"],
}


class EngineSettings(BaseSettings):
    """Configuration for the conversation memory and session-state engine.

    Example:
        >>> settings = EngineSettings(archival_trigger_turns=100)
        >>> settings.rotation_threshold
        0.8
    """

    model_config = SettingsConfigDict(
        env_prefix='CONVERSATION_ENGINE_',
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
    )

    # Buffer limits (characters)
    conversation_history_limit: int = Field(
        default=32000,
        gt=0,
        description="Verbatim history buffer limit"
    )
    active_session_limit: int = Field(
        default=4000,
        gt=0,
        description="Session digest buffer limit"
    )
    context_summary_limit: int = Field(
        default=8000,
        gt=0,
        description="Human summary buffer limit"
    )
    memory_metadata_limit: int = Field(
        default=2000,
        gt=0,
        description="Usage statistics buffer limit"
    )

    # Rotation
    rotation_threshold: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Verbatim occupancy ratio that triggers rotation"
    )
    rotation_keep_ratio: float = Field(
        default=0.75,
        gt=0.0,
        le=1.0,
        description="Share of turns kept active after rotation"
    )
    archival_trigger_turns: int = Field(
        default=50,
        ge=1,
        description="Turn count that triggers rotation"
    )

    # Context selection
    recent_turns_window: int = Field(default=5, ge=1)
    max_relevant_turns: int = Field(default=10, ge=1)
    minimum_relevance: float = Field(default=0.1, ge=0.0, le=1.0)
    recency_weight: float = Field(default=1.0, ge=0.0)
    topic_weight: float = Field(default=0.8, ge=0.0)
    domain_weight: float = Field(default=0.9, ge=0.0)
    affect_weight: float = Field(default=0.7, ge=0.0)
    followup_weight: float = Field(default=0.95, ge=0.0)
    topic_tag_bonus: float = Field(default=0.3, ge=0.0, le=1.0)
    affect_continuity_bonus: float = Field(default=0.2, ge=0.0, le=1.0)
    pattern_boost: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Confidence bonus per detected pattern (stable topic, explicit follow-up)"
    )

    # Session lifecycle
    phase_thresholds: Tuple[int, int, int, int] = Field(
        default=(2, 5, 10, 20),
        description="Turn counts that open each conversation phase after the first"
    )
    session_archive_turns: int = Field(
        default=25,
        ge=1,
        description="Ended sessions at or above this many turns archive automatically"
    )
    session_archive_hours: float = Field(
        default=2.0,
        gt=0.0,
        description="Ended sessions older than this archive automatically"
    )
    long_running_minutes: float = Field(default=60.0, gt=0.0)
    attention_quality_threshold: float = Field(default=0.6, ge=0.0, le=1.0)

    # External hand-off
    handoff_max_attempts: int = Field(default=3, ge=1, le=10)
    handoff_base_delay: float = Field(default=1.0, ge=0.0)
    handoff_max_delay: float = Field(default=30.0, ge=0.0)
    handoff_jitter: float = Field(default=0.0, ge=0.0, le=1.0)
    summary_update_frequency: int = Field(
        default=5,
        ge=1,
        description="Turns between pushes of the human summary block"
    )
    collaborator_timeout: float = Field(default=30.0, gt=0.0)

    # Lexicon
    domain_terms: List[str] = Field(default_factory=lambda: list(DEFAULT_DOMAIN_TERMS))
    safety_terms: List[str] = Field(default_factory=lambda: list(DEFAULT_SAFETY_TERMS))
    affect_terms: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_AFFECT_TERMS.items()}
    )
    affect_intensity: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_AFFECT_INTENSITY))
    followup_markers: List[str] = Field(default_factory=lambda: list(DEFAULT_FOLLOWUP_MARKERS))
    resolution_markers: List[str] = Field(default_factory=lambda: list(DEFAULT_RESOLUTION_MARKERS))
    stop_words: List[str] = Field(default_factory=lambda: list(DEFAULT_STOP_WORDS))
    topic_categories: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_TOPIC_CATEGORIES.items()}
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    service_name: str = Field(default="conversation-engine")

    @field_validator("phase_thresholds")
    @classmethod
    def validate_phase_thresholds(cls, v: Tuple[int, int, int, int]) -> Tuple[int, int, int, int]:
        """Phase thresholds must be positive and strictly increasing."""
        if v[0] < 1 or any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError("phase_thresholds must be positive and strictly increasing")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @property
    def strategy_weights(self) -> Dict[str, float]:
        """Per-strategy weights keyed by strategy name."""
        return {
            "recency": self.recency_weight,
            "topic": self.topic_weight,
            "domain": self.domain_weight,
            "affect": self.affect_weight,
            "followup": self.followup_weight,
        }

    @property
    def buffer_limits(self) -> Dict[str, int]:
        """Character limits keyed by memory block label."""
        return {
            "conversation_history": self.conversation_history_limit,
            "active_session": self.active_session_limit,
            "context_summary": self.context_summary_limit,
            "memory_metadata": self.memory_metadata_limit,
        }
