"""
Partitioned similarity store over the key-value store.

Layout (one namespace per partition):
    {prefix}:{partition}:entry:{id} -> JSON-serialised SimilarityEntry
    {prefix}:{partition}:ids        -> set of entry ids
    {prefix}:{partition}:metadata   -> hash (lastUpdate, type, dimensions)

Search is brute force: load every entry of the partition, score with cosine
similarity (numpy), keep scores >= threshold, sort descending, cut to limit.
This is a small-scale cache, not an ANN index.
"""

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .kv import KeyValueStore
from ..core.models import SimilarityEntry, now_ms

PARTITION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
DEFAULT_DIMENSIONS = 1536

SearchResult = Tuple[SimilarityEntry, float]


def partition_type(partition: str) -> str:
    if partition.startswith("memory-"):
        return "memory"
    if partition == "strategy":
        return "strategy"
    return "info"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class SimilarityStore:
    def __init__(self, kv: KeyValueStore, key_prefix: str = "vector", dimensions: int = DEFAULT_DIMENSIONS):
        self.kv = kv
        self.key_prefix = key_prefix
        self.dimensions = dimensions

    # -- key helpers -------------------------------------------------------
    def _validate_partition(self, partition: str) -> None:
        if not partition or not PARTITION_PATTERN.match(partition):
            raise ValueError(
                f"Invalid partition: {partition!r}. Use letters, digits, '-', '_' or '.', e.g. 'info' or 'memory-<subject>'"
            )

    def _validate_embedding(self, embedding: Sequence[float]) -> None:
        if len(embedding) != self.dimensions:
            raise ValueError(f"Embedding dimension mismatch: got {len(embedding)}, store expects {self.dimensions}")

    def _key(self, partition: str, entry_id: Optional[str] = None) -> str:
        if entry_id is None:
            return f"{self.key_prefix}:{partition}"
        return f"{self.key_prefix}:{partition}:entry:{entry_id}"

    async def _touch_metadata(self, partition: str) -> None:
        await self.kv.hset(
            f"{self._key(partition)}:metadata",
            {"lastUpdate": now_ms(), "type": partition, "dimensions": self.dimensions},
        )

    # -- writes ------------------------------------------------------------
    async def save(
        self,
        partition: str,
        entry_id: str,
        content: str,
        embedding: Sequence[float],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SimilarityEntry:
        self._validate_partition(partition)
        self._validate_embedding(embedding)

        ts = now_ms()
        entry = SimilarityEntry(
            id=entry_id,
            partition=partition,
            type=partition_type(partition),
            embedding=[float(x) for x in embedding],
            dimensions=self.dimensions,
            content=content,
            metadata=dict(metadata or {}),
            created_at=ts,
            updated_at=ts,
        )
        await self.kv.set(self._key(partition, entry_id), entry.model_dump_json())
        await self.kv.sadd(f"{self._key(partition)}:ids", entry_id)
        await self._touch_metadata(partition)
        logger.debug(f"[SimilarityStore] saved {entry_id} to partition {partition}")
        return entry

    async def save_batch(self, partition: str, entries: List[Dict[str, Any]]) -> int:
        """Each item needs id, content and embedding; metadata is optional."""
        self._validate_partition(partition)
        for item in entries:
            self._validate_embedding(item["embedding"])
        for item in entries:
            await self.save(partition, item["id"], item["content"], item["embedding"], item.get("metadata"))
        logger.info(f"[SimilarityStore] saved batch of {len(entries)} entries to partition {partition}")
        return len(entries)

    async def update(
        self,
        partition: str,
        entry_id: str,
        content: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SimilarityEntry]:
        """Overwrites fields of an existing entry in place. Returns None if it does not exist."""
        self._validate_partition(partition)
        existing = await self.get(partition, entry_id)
        if existing is None:
            logger.warning(f"[SimilarityStore] cannot update missing entry {entry_id} in partition {partition}")
            return None

        changes: Dict[str, Any] = {"updated_at": now_ms()}
        if content is not None:
            changes["content"] = content
        if embedding is not None:
            self._validate_embedding(embedding)
            changes["embedding"] = [float(x) for x in embedding]
        if metadata:
            changes["metadata"] = {**existing.metadata, **metadata}

        updated = existing.model_copy(update=changes)
        await self.kv.set(self._key(partition, entry_id), updated.model_dump_json())
        await self._touch_metadata(partition)
        logger.debug(f"[SimilarityStore] updated {entry_id} in partition {partition}")
        return updated

    async def delete(self, partition: str, entry_id: str) -> bool:
        self._validate_partition(partition)
        removed = await self.kv.delete(self._key(partition, entry_id))
        await self.kv.srem(f"{self._key(partition)}:ids", entry_id)
        if removed:
            logger.info(f"[SimilarityStore] deleted {entry_id} from partition {partition}")
        return removed > 0

    async def clear_partition(self, partition: str) -> int:
        self._validate_partition(partition)
        ids_key = f"{self._key(partition)}:ids"
        ids = await self.kv.smembers(ids_key)
        if ids:
            await self.kv.delete(*[self._key(partition, i) for i in ids])
        await self.kv.delete(ids_key, f"{self._key(partition)}:metadata")
        logger.info(f"[SimilarityStore] cleared partition {partition} ({len(ids)} entries)")
        return len(ids)

    # -- reads -------------------------------------------------------------
    async def get(self, partition: str, entry_id: str) -> Optional[SimilarityEntry]:
        self._validate_partition(partition)
        raw = await self.kv.get(self._key(partition, entry_id))
        if raw is None:
            return None
        return SimilarityEntry.model_validate_json(raw)

    async def get_all(self, partition: str) -> List[SimilarityEntry]:
        self._validate_partition(partition)
        ids = await self.kv.smembers(f"{self._key(partition)}:ids")
        entries: List[SimilarityEntry] = []
        for entry_id in ids:
            raw = await self.kv.get(self._key(partition, entry_id))
            if raw is None:
                continue
            try:
                entries.append(SimilarityEntry.model_validate_json(raw))
            except ValueError as e:
                logger.warning(f"[SimilarityStore] skipping unreadable entry {entry_id} in {partition}: {e}")
        return entries

    async def search(
        self,
        partition: str,
        vector: Sequence[float],
        limit: int = 10,
        threshold: float = 0.0,
        type: Optional[str] = None,
    ) -> List[SearchResult]:
        """Returns (entry, score) pairs with score >= threshold, best first, at most `limit`."""
        self._validate_partition(partition)
        self._validate_embedding(vector)

        entries = await self.get_all(partition)
        if type:
            entries = [e for e in entries if e.type == type]
        if not entries:
            return []

        q = np.asarray(vector, dtype=np.float32)
        E = np.asarray([e.embedding for e in entries], dtype=np.float32)  # (N, dim)
        norms = np.linalg.norm(E, axis=1) * np.linalg.norm(q)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, (E @ q) / norms, 0.0)

        results = [
            (entry, float(score))
            for entry, score in zip(entries, scores.tolist())
            if score >= threshold
        ]
        # Stable sort: equal scores keep id order
        results.sort(key=lambda r: r[1], reverse=True)
        return results[:limit] if limit > 0 else results

    async def find_duplicates(self, partition: str, threshold: float = 0.95) -> List[Dict[str, Any]]:
        entries = await self.get_all(partition)
        groups = []
        for i, original in enumerate(entries):
            duplicates = [
                candidate for candidate in entries[i + 1:]
                if cosine_similarity(original.embedding, candidate.embedding) >= threshold
            ]
            if duplicates:
                groups.append({"original": original, "duplicates": duplicates})
        return groups

    async def get_partition_stats(self, partition: str) -> Dict[str, Optional[int]]:
        self._validate_partition(partition)
        count = await self.kv.scard(f"{self._key(partition)}:ids")
        meta = await self.kv.hgetall(f"{self._key(partition)}:metadata")
        return {
            "count": count,
            "last_update": int(meta["lastUpdate"]) if meta.get("lastUpdate") else None,
            "dimensions": int(meta["dimensions"]) if meta.get("dimensions") else None,
        }

    async def list_partitions(self) -> List[str]:
        prefix = f"{self.key_prefix}:"
        partitions = []
        for key in await self.kv.keys(prefix):
            name = key[len(prefix):-len(":metadata")]
            if key.endswith(":metadata") and ":" not in name:
                partitions.append(name)
        return sorted(partitions)

