from typing import Optional

from loguru import logger

from ..core.base import PipelineStage
from ..core.errors import JudgmentCallFailed
from ..core.models import DeduplicatedRecord, EventKind, SignalRecord


class SignalStage(PipelineStage):
    """Stage 3: one summarize call per admitted record; failures are counted and skipped."""
    emits = EventKind.SIGNAL_GENERATED

    async def execute(self, record: DeduplicatedRecord) -> Optional[SignalRecord]:
        self.count("processed")
        try:
            text, call = await self.judge.summarize(record, record.final_content, self.config)
        except JudgmentCallFailed as e:
            self.count("failed")
            self.warn(f"signal generation failed for {record.record_id}: {e}")
            return None

        self.record_call(call)
        self.count("generated")
        logger.info(f"[{self.stage_name}] signal for {record.record_id[:8]} ({record.entity_name}): {text[:80]!r}")

        return SignalRecord(
            record_id=record.record_id,
            entity_id=record.entity_id,
            entity_name=record.entity_name,
            kind=record.kind,
            signal_text=text,
            model=call.model,
            source_content=record.final_content,
            created_at=record.created_at,
        )
