from typing import Callable, Dict, List, Optional, Tuple
from datetime import datetime

import structlog

from conversation_engine.config import EngineSettings
from conversation_engine.domain.models.context import MemoryBuffers
from conversation_engine.domain.models.conversation import ConversationHistory, Turn, TurnRole
from conversation_engine.domain.models.session import SessionState

logger = structlog.get_logger(__name__)

HISTORY_TRUNCATED = "[TRUNCATED - Showing most recent turns]"
CONTENT_TRUNCATED = "[TRUNCATED - Content exceeded memory limit]"
AGENT_EXCERPT_CHARS = 100
SUMMARY_EXCERPT_CHARS = 50


def _one_line(text: str) -> str:
    return " ".join((text or "").split())


def _excerpt(text: str, limit: int) -> str:
    text = _one_line(text)
    return text if len(text) <= limit else text[:limit] + "..."


def _timestamp(value: Optional[datetime] = None) -> str:
    return (value or datetime.utcnow()).isoformat(timespec="seconds")


class BufferFormatter:
    """Renders session data into the bounded text blocks kept by external memory.

    Rendering is a pure boundary: it reads histories and session state and
    never mutates them. Every render honours its character limit; when a
    render fails or cannot fit, a one-line fallback is returned instead.
    """

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()
        self.limits = self.settings.buffer_limits

    # Verbatim history

    def header_line(self, history: ConversationHistory) -> str:
        return "SESSION_ID: %s | TOTAL_TURNS: %d | STATUS: %s" % (
            history.session_id,
            history.total_turns,
            history.status.value,
        )

    def turn_line(self, turn: Turn) -> str:
        """One line per turn: number, role, text and classification metadata"""
        parts = []
        if turn.role == TurnRole.AGENT:
            parts.append("[Turn %d] AGENT(%s): %s" % (
                turn.turn_number,
                turn.routed_collaborator or "unknown",
                _excerpt(turn.raw_text, AGENT_EXCERPT_CHARS),
            ))
            if turn.response_quality is not None:
                parts.append("QUALITY: %.2f" % turn.response_quality)
        else:
            parts.append("[Turn %d] %s: %s" % (turn.turn_number, turn.role.value, _one_line(turn.raw_text)))
            if turn.classified_intent:
                parts.append("INTENT: %s(%.2f)" % (turn.classified_intent, turn.intent_confidence or 0.0))
            if turn.routed_collaborator:
                parts.append("ROUTED: %s" % turn.routed_collaborator)
        if turn.topic_tags:
            parts.append("TOPICS: %s" % ",".join(sorted(turn.topic_tags)))
        if turn.affect_tag:
            parts.append("AFFECT: %s" % turn.affect_tag)
        parts.append(_timestamp(turn.created_at))
        return " | ".join(parts)

    def format_conversation(self, history: ConversationHistory) -> str:
        """Unbounded verbatim rendering of the non-archived turns"""
        lines = [self.header_line(history)]
        lines.extend(self.turn_line(turn) for turn in history.active_turns())
        return "\n".join(lines)

    def render_verbatim(self, history: ConversationHistory) -> str:
        limit = self.limits["conversation_history"]
        return self._guarded(history.session_id, "conversation_history", limit,
                             lambda: self._render_verbatim(history, limit))

    def _render_verbatim(self, history: ConversationHistory, limit: int) -> str:
        header = self.header_line(history)
        turn_lines = [self.turn_line(turn) for turn in history.active_turns()]
        full = "\n".join([header] + turn_lines)
        if len(full) <= limit:
            return full

        # Drop from the oldest end; header and marker always stay
        budget = limit - len(header) - len(HISTORY_TRUNCATED) - 2
        if budget < 0:
            return self.fallback_line(history.session_id, limit)
        kept: List[str] = []
        for line in reversed(turn_lines):
            cost = len(line) + 1
            if cost > budget:
                break
            kept.append(line)
            budget -= cost
        kept.reverse()
        return "\n".join([header] + kept + [HISTORY_TRUNCATED])

    # Session digest

    def render_digest(self, history: ConversationHistory, state: Optional[SessionState] = None) -> str:
        limit = self.limits["active_session"]

        def build() -> str:
            status = state.status.value if state else history.status.value
            topic = (state.current_topic if state else None) or self._latest_topic(history) or "general"
            line = "SESSION_ID: %s | USER_ID: %s | STATUS: %s | TOPIC: %s | TURNS: %d | UPDATED: %s" % (
                history.session_id,
                history.user_id,
                status,
                topic,
                history.total_turns,
                _timestamp(history.last_updated),
            )
            return self._truncate_tail(line, limit, history.session_id)

        return self._guarded(history.session_id, "active_session", limit, build)

    # Human summary

    def render_summary(self, history: ConversationHistory, state: Optional[SessionState] = None) -> str:
        limit = self.limits["context_summary"]
        return self._guarded(history.session_id, "context_summary", limit,
                             lambda: self._truncate_tail(self._build_summary(history, state), limit, history.session_id))

    def _build_summary(self, history: ConversationHistory, state: Optional[SessionState]) -> str:
        turns = history.active_turns()
        if state is not None:
            duration = state.duration_minutes
        else:
            duration = max(0.0, (history.last_updated - history.created_at).total_seconds() / 60.0)
        topics = sorted({tag for turn in history.turns for tag in turn.topic_tags})
        affect = [turn.affect_tag for turn in turns if turn.affect_tag]

        narrative = "Session ran %.1f minutes over %d turns" % (duration, history.total_turns)
        if topics:
            narrative += " and covered %s." % ", ".join(topics)
        else:
            narrative += " with no specific topic identified yet."

        lines = [
            "CONVERSATION SUMMARY for %s" % history.session_id,
            narrative,
            "Duration: %.1f minutes" % duration,
            "Total Turns: %d" % history.total_turns,
            "KEY TOPICS: %s" % (", ".join(topics) if topics else "none"),
        ]
        if affect:
            lines.append("EMOTIONAL PROGRESSION: %s" % " -> ".join(affect))
        lines.append("RECENT CONTEXT:")

        window = self.settings.recent_turns_window
        user_turns = [t for t in turns if t.role == TurnRole.USER][-window:]
        for turn in user_turns:
            lines.append("Turn %d: %s -> %s" % (
                turn.turn_number,
                _excerpt(turn.raw_text, SUMMARY_EXCERPT_CHARS),
                self._routed_to(history, turn),
            ))
        return "\n".join(lines)

    @staticmethod
    def _routed_to(history: ConversationHistory, user_turn: Turn) -> str:
        if user_turn.routed_collaborator:
            return user_turn.routed_collaborator
        reply = history.get_turn(user_turn.turn_number + 1)
        if reply is not None and reply.role == TurnRole.AGENT and reply.routed_collaborator:
            return reply.routed_collaborator
        return "pending"

    @staticmethod
    def _latest_topic(history: ConversationHistory) -> Optional[str]:
        for turn in reversed(history.turns):
            if turn.topic_tags:
                return sorted(turn.topic_tags)[0]
        return None

    # Usage statistics

    def render_usage(
        self,
        history: ConversationHistory,
        sizes: Dict[str, int],
        rotation_needed: bool = False,
    ) -> str:
        limit = self.limits["memory_metadata"]

        def build() -> str:
            lines = ["MEMORY_USAGE for %s" % history.session_id]
            for label, used in sizes.items():
                cap = self.limits[label]
                lines.append("%s: %d/%d (%.1f%%)" % (label, used, cap, 100.0 * used / cap))
            lines.append("ACTIVE_TURNS: %d" % len(history.active_turns()))
            lines.append("ARCHIVED_TURNS: %d" % len(history.archived_turns()))
            lines.append("ROTATION_NEEDED: %s" % ("true" if rotation_needed else "false"))
            lines.append("LAST_UPDATED: %s" % _timestamp())
            return self._truncate_tail("\n".join(lines), limit, history.session_id)

        return self._guarded(history.session_id, "memory_metadata", limit, build)

    def render_all(
        self,
        history: ConversationHistory,
        state: Optional[SessionState] = None,
        rotation_needed: bool = False,
    ) -> MemoryBuffers:
        """Render all four blocks; usage stats describe the other three"""
        verbatim = self.render_verbatim(history)
        digest = self.render_digest(history, state)
        summary = self.render_summary(history, state)
        sizes = {
            "conversation_history": len(verbatim),
            "active_session": len(digest),
            "context_summary": len(summary),
        }
        return MemoryBuffers(
            session_id=history.session_id,
            conversation_history=verbatim,
            active_session=digest,
            context_summary=summary,
            memory_metadata=self.render_usage(history, sizes, rotation_needed),
        )

    def measure(self, buffers: MemoryBuffers) -> Dict[str, Tuple[int, int]]:
        """(used, limit) per block"""
        return {label: (len(text), self.limits[label]) for label, text in buffers.as_blocks().items()}

    # Helpers

    def fallback_line(self, session_id: str, limit: int) -> str:
        return ("SESSION_ID: %s | %s" % (session_id, _timestamp()))[:limit]

    def _truncate_tail(self, text: str, limit: int, session_id: str) -> str:
        if len(text) <= limit:
            return text
        budget = limit - len(CONTENT_TRUNCATED) - 1
        if budget <= 0:
            return self.fallback_line(session_id, limit)
        head = text[:budget]
        cut = head.rfind("\n")
        if cut > 0:
            head = head[:cut]
        return head + "\n" + CONTENT_TRUNCATED

    def _guarded(self, session_id: str, label: str, limit: int, build: Callable[[], str]) -> str:
        try:
            rendered = build()
        except Exception as e:
            logger.warning("Buffer render failed, using fallback", session_id=session_id, block=label, error=str(e))
            return self.fallback_line(session_id, limit)
        if len(rendered) > limit:
            logger.warning("Buffer render exceeded limit, using fallback", session_id=session_id, block=label)
            return self.fallback_line(session_id, limit)
        return rendered
