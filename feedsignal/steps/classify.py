"""
Stage 1: Label each ingested record and keep only the relevant ones.

Inputs:
- SourceRecord payloads (record.received events).
- config keys: model, temperature, max_tokens, prompt_template, system_prompt.

Outputs:
- ClassifiedRecord for category == relevant (record.classified events).

Counters:
- received, classified, dropped, failed, plus one per category (so "relevant"
  counts the records passed on). A judgment failure drops the record and counts
  as failed; the rest of the batch is still processed.
"""

from typing import Optional

from loguru import logger

from ..core.base import PipelineStage
from ..core.errors import JudgmentCallFailed
from ..core.models import Category, ClassifiedRecord, EventKind, SourceRecord


class ClassifyStage(PipelineStage):
    emits = EventKind.RECORD_CLASSIFIED

    async def execute(self, record: SourceRecord) -> Optional[ClassifiedRecord]:
        self.count("received")
        if not record.content or not record.content.strip():
            self.count("dropped")
            logger.debug(f"[{self.stage_name}] {record.record_id[:8]} has no content, dropped")
            return None

        try:
            result, call = await self.judge.classify(record, self.config)
        except JudgmentCallFailed as e:
            self.count("failed")
            self.warn(f"classification failed for {record.record_id}: {e}")
            return None

        self.record_call(call)
        self.count("classified")
        self.count(result.category.value)
        self.log_artifact(f"Classification {record.record_id[:8]}", result.model_dump())

        if result.category != Category.RELEVANT:
            self.count("dropped")
            logger.info(
                f"[{self.stage_name}] dropped {record.record_id[:8]} from {record.entity_name} "
                f"as {result.category.value}: {result.reason[:80]}"
            )
            return None

        return ClassifiedRecord(
            **record.model_dump(),
            category=result.category,
            classification_reason=result.reason,
        )
