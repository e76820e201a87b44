from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from conversation_engine.config import EngineSettings
from conversation_engine.domain.models.context import MemoryBuffers
from conversation_engine.domain.orchestration.collaborators import CollaboratorBundle, TextCollaborator
from conversation_engine.errors import ExternalHandoffError
from conversation_engine.infrastructure.observability.logging import engine_logger, metrics
from conversation_engine.infrastructure.resilience.retry import RetryPolicy

logger = structlog.get_logger(__name__)

MEMORY_UPDATE_FORMAT = "MEMORY_UPDATE|BLOCK:%s|OPERATION:REPLACE|CONTENT:%s"


class HandoffReport(BaseModel):
    """Outcome of pushing rendered blocks to external memory"""
    session_id: str
    sent: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    skipped: List[str] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.failed)


class ExternalMemorySync:
    """Pushes rendered memory blocks to the context collaborator.

    Callers render under the session lock and call ``sync`` after releasing
    it. Nothing here touches local state, so a failed push only degrades
    the report.
    """

    def __init__(
        self,
        collaborator: TextCollaborator,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.settings = settings or EngineSettings()
        self.collaborator = collaborator
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)

    def blocks_due(self, buffers: MemoryBuffers, total_turns: int, rotated: bool = False) -> Dict[str, str]:
        """The summary block only goes out periodically or after a rotation"""
        blocks = buffers.as_blocks()
        summary_due = rotated or (total_turns > 0 and total_turns % self.settings.summary_update_frequency == 0)
        if not summary_due:
            blocks.pop("context_summary")
        return blocks

    async def sync(
        self,
        bundle: CollaboratorBundle,
        buffers: MemoryBuffers,
        total_turns: int,
        rotated: bool = False,
        deadline: Optional[float] = None,
    ) -> HandoffReport:
        report = HandoffReport(session_id=buffers.session_id)
        blocks = self.blocks_due(buffers, total_turns, rotated)
        report.skipped = [label for label in buffers.as_blocks() if label not in blocks]

        for label, content in blocks.items():
            if deadline is not None and self.retry_policy.clock() >= deadline:
                report.failed[label] = "deadline reached before send"
                continue

            message = MEMORY_UPDATE_FORMAT % (label, content)
            attempts = 0

            async def push() -> str:
                nonlocal attempts
                attempts += 1
                return await self.collaborator.send(bundle.context_handle, message, bundle.identity_handle)

            try:
                await self.retry_policy.run(push, deadline=deadline, description=f"memory update {label}")
            except ExternalHandoffError as e:
                report.failed[label] = e.message
                metrics.increment_counter("handoff.failed", tags={"block": label})
                engine_logger.log_handoff(buffers.session_id, label, False, attempts, error=e.message)
                continue

            report.sent.append(label)
            metrics.increment_counter("handoff.sent", tags={"block": label})
            engine_logger.log_handoff(buffers.session_id, label, True, attempts)

        if report.degraded:
            logger.warning(
                "External memory update degraded, continuing with local state",
                session_id=buffers.session_id,
                failed=sorted(report.failed),
            )
        return report
