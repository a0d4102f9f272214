"""
Stage 2: Semantic deduplication against the similarity store.

Per ClassifiedRecord:
1. embed the content,
2. search the partition for the top_k entries scoring >= similarity_threshold,
3. no match -> store the record, emit action=new,
4. matches -> ask the judge how the content relates to the best match
   (lower-ranked matches go along as context):
   - should_skip (identical / existing_contains_new): drop, count skipped
   - processed_content and is_time_effective and should_update:
       overwrite the best match in place, emit action=update
   - processed_content otherwise: store it as a new entry, emit action=processed
   - no processed_content (unrelated): store the original, emit action=new
5. judgment failure: drop, count ai_failed.

processed_content is cut to max_processed_chars before it is stored.

Counters: processed (emitted downstream), new, updated, processed_created,
skipped, ai_failed, embed_failed.
"""

from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from ..core.base import PipelineStage
from ..core.errors import EmbeddingFailed, JudgmentCallFailed
from ..core.models import (
    ClassifiedRecord,
    DedupAction,
    DedupMetadata,
    DeduplicatedRecord,
    EventKind,
    Relationship,
    SimilarityEntry,
)
from ..storage.similarity import SimilarityStore, partition_type

SKIP_RELATIONSHIPS = {Relationship.IDENTICAL, Relationship.EXISTING_CONTAINS_NEW}


class DeduplicateStage(PipelineStage):
    emits = EventKind.RECORD_DEDUPLICATED

    def __init__(self, stage_config: Dict[str, Any], resources):
        super().__init__(stage_config, resources)
        self.partition = self.config.get("partition", "info")
        self.top_k = int(self.config.get("top_k", 3))
        self.similarity_threshold = float(self.config.get("similarity_threshold", 0.6))
        self.max_processed_chars = int(self.config.get("max_processed_chars", 8000))
        if resources.similarity is None or resources.embedder is None:
            raise ValueError(f"Stage '{self.stage_name}' needs a similarity store and an embedder")

    @property
    def store(self) -> SimilarityStore:
        return self.resources.similarity

    async def _embed(self, text: str) -> List[float]:
        return await self.resources.embedder.embed(text)

    def _entry_metadata(self, record: ClassifiedRecord) -> Dict[str, Any]:
        return {
            "record_id": record.record_id,
            "entity_id": record.entity_id,
            "entity_name": record.entity_name,
            "kind": record.kind.value,
            "category": record.category.value,
            "created_at": record.created_at.isoformat(),
        }

    def _emit(self, record: ClassifiedRecord, final_content: str, metadata: DedupMetadata,
              processed_content: Optional[str] = None) -> DeduplicatedRecord:
        self.count("processed")
        return DeduplicatedRecord(
            **record.model_dump(),
            final_content=final_content,
            processed_content=processed_content,
            dedup_metadata=metadata,
        )

    async def execute(self, record: ClassifiedRecord) -> Optional[DeduplicatedRecord]:
        short_id = record.record_id[:8]
        logger.debug(f"[{self.stage_name}] {short_id} from {record.entity_name}: {record.content[:50]!r}")

        try:
            vector = await self._embed(record.content)
        except EmbeddingFailed as e:
            self.count("embed_failed")
            self.warn(f"embedding failed for {record.record_id}: {e}")
            return None

        matches = await self.store.search(
            self.partition,
            vector,
            limit=self.top_k,
            threshold=self.similarity_threshold,
            type=partition_type(self.partition),
        )

        if not matches:
            await self.store.save(self.partition, record.record_id, record.content, vector, self._entry_metadata(record))
            self.count("new")
            return self._emit(record, record.content, DedupMetadata(action=DedupAction.NEW))

        return await self._judge_against(record, vector, matches)

    async def _judge_against(
        self,
        record: ClassifiedRecord,
        vector: List[float],
        matches: List[Tuple[SimilarityEntry, float]],
    ) -> Optional[DeduplicatedRecord]:
        best, best_score = matches[0]
        best_score = min(max(best_score, 0.0), 1.0)

        try:
            judgment, call = await self.judge.compare_relationship(record.content, matches, self.config)
        except JudgmentCallFailed as e:
            self.count("ai_failed")
            self.warn(f"relationship judgment failed for {record.record_id}: {e}")
            return None

        self.record_call(call)
        self.log_artifact(f"Relationship {record.record_id[:8]} vs {best.id[:8]}", judgment.model_dump())

        if judgment.should_skip or judgment.relationship in SKIP_RELATIONSHIPS:
            self.count("skipped")
            logger.info(
                f"[{self.stage_name}] skipped {record.record_id[:8]}: {judgment.relationship.value} "
                f"(similarity {best_score:.4f} to {best.id[:8]})"
            )
            return None

        processed = (judgment.processed_content or "").strip()
        if processed:
            if len(processed) > self.max_processed_chars:
                self.warn(f"processed content for {record.record_id} cut to {self.max_processed_chars} chars")
                processed = processed[:self.max_processed_chars]

            try:
                processed_vector = await self._embed(processed)
            except EmbeddingFailed as e:
                self.count("embed_failed")
                self.warn(f"embedding of processed content failed for {record.record_id}: {e}")
                return None

            metadata = DedupMetadata(
                action=DedupAction.PROCESSED,
                relationship=judgment.relationship,
                similarity_score=best_score,
                matched_record_id=best.id,
                is_time_effective=judgment.is_time_effective,
            )

            if judgment.is_time_effective and judgment.should_update:
                updated = await self.store.update(
                    self.partition,
                    best.id,
                    content=processed,
                    embedding=processed_vector,
                    metadata={"last_update_from_record": record.record_id},
                )
                if updated is not None:
                    self.count("updated")
                    metadata = metadata.model_copy(update={"action": DedupAction.UPDATE})
                    return self._emit(record, processed, metadata, processed_content=processed)
                self.warn(f"update target {best.id} vanished, storing {record.record_id} as processed")

            await self.store.save(self.partition, record.record_id, processed, processed_vector, {
                **self._entry_metadata(record),
                "derived_from": best.id,
            })
            self.count("processed_created")
            return self._emit(record, processed, metadata, processed_content=processed)

        # unrelated (or nothing extracted): keep the original
        await self.store.save(self.partition, record.record_id, record.content, vector, self._entry_metadata(record))
        self.count("new")
        return self._emit(
            record,
            record.content,
            DedupMetadata(
                action=DedupAction.NEW,
                relationship=judgment.relationship,
                similarity_score=best_score,
                matched_record_id=best.id,
                is_time_effective=judgment.is_time_effective,
            ),
        )
