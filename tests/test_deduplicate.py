import pytest

from feedsignal.core.base import StageResources
from feedsignal.core.models import DedupAction, EventKind, PipelineEvent, Relationship
from feedsignal.steps.deduplicate import DeduplicateStage

from conftest import FakeEmbedder, FakeLLM, make_classified, relationship, stage_settings

EXISTING = "Company X raises $10M"
EXTENDED = "Company X raises $10M led by Firm Y"
EXTRACTED = "The round was led by Firm Y."

VECTORS = {
    EXISTING: [1.0, 0.0, 0.0, 0.0],
    EXTENDED: [0.9, 0.1, 0.0, 0.0],
    "BTC breaks 70k": [0.0, 1.0, 0.0, 0.0],
    EXTRACTED: [0.0, 0.0, 1.0, 0.0],
}


def make_stage(make_resources, replies, embedder=None, **overrides) -> DeduplicateStage:
    resources = make_resources(FakeLLM(replies), embedder or FakeEmbedder(VECTORS))
    return DeduplicateStage(stage_settings("deduplicate", **overrides), resources)


async def dedup(stage, *records):
    events = [PipelineEvent(kind=EventKind.RECORD_CLASSIFIED, payload=r, flow_id="flow-d") for r in records]
    return [e.payload for e in await stage.run(events)]


async def test_first_sighting_is_new(make_resources, similarity):
    stage = make_stage(make_resources, [])

    [out] = await dedup(stage, make_classified("r1", EXISTING))

    assert out.dedup_metadata.action == DedupAction.NEW
    assert out.dedup_metadata.relationship is None
    assert out.final_content == EXISTING
    assert (await similarity.get("info", "r1")).content == EXISTING
    assert stage.counters["new"] == 1


async def test_identical_content_is_skipped_once_stored(make_resources, similarity):
    stage = make_stage(make_resources, [relationship("identical", skip=True)])

    first = await dedup(stage, make_classified("r1", "BTC breaks 70k"))
    second = await dedup(stage, make_classified("r2", "BTC breaks 70k", seconds=60))

    assert first[0].dedup_metadata.action == DedupAction.NEW
    assert second == []
    assert len(await similarity.get_all("info")) == 1
    assert stage.counters["skipped"] == 1
    assert stage.counters["ai_failed"] == 0


async def test_existing_contains_new_is_skipped_even_without_flag(make_resources, similarity):
    await similarity.save("info", "old", EXISTING, VECTORS[EXISTING])
    stage = make_stage(make_resources, [relationship("existing_contains_new", skip=False)])

    assert await dedup(stage, make_classified("r1", EXTENDED)) == []
    assert stage.counters["skipped"] == 1


async def test_incremental_extraction_is_stored_as_processed(make_resources, similarity):
    await similarity.save("info", "old", EXISTING, VECTORS[EXISTING])
    stage = make_stage(make_resources, [relationship("new_contains_existing", processed=EXTRACTED)])

    [out] = await dedup(stage, make_classified("r1", EXTENDED))

    assert out.dedup_metadata.action == DedupAction.PROCESSED
    assert out.dedup_metadata.relationship == Relationship.NEW_CONTAINS_EXISTING
    assert out.dedup_metadata.matched_record_id == "old"
    assert out.final_content == EXTRACTED
    assert out.processed_content == EXTRACTED
    assert EXISTING not in out.final_content
    assert out.content == EXTENDED

    stored = await similarity.get("info", "r1")
    assert stored.content == EXTRACTED
    assert stored.embedding == VECTORS[EXTRACTED]
    assert stored.metadata["derived_from"] == "old"
    assert (await similarity.get("info", "old")).content == EXISTING
    assert stage.counters["processed_created"] == 1


async def test_time_effective_update_overwrites_best_match(make_resources, similarity):
    await similarity.save("info", "old", EXISTING, VECTORS[EXISTING])
    stage = make_stage(make_resources, [
        relationship("partial_overlap", processed=EXTRACTED, time_effective=True, update=True),
    ])

    [out] = await dedup(stage, make_classified("r1", EXTENDED))

    assert out.dedup_metadata.action == DedupAction.UPDATE
    assert out.dedup_metadata.matched_record_id == "old"
    assert out.final_content == EXTRACTED
    entries = await similarity.get_all("info")
    assert [e.id for e in entries] == ["old"]
    assert entries[0].content == EXTRACTED
    assert entries[0].embedding == VECTORS[EXTRACTED]
    assert entries[0].metadata["last_update_from_record"] == "r1"
    assert stage.counters["updated"] == 1


async def test_update_without_time_effect_is_processed(make_resources, similarity):
    await similarity.save("info", "old", EXISTING, VECTORS[EXISTING])
    stage = make_stage(make_resources, [
        relationship("new_contains_existing", processed=EXTRACTED, time_effective=False, update=True),
    ])

    [out] = await dedup(stage, make_classified("r1", EXTENDED))

    assert out.dedup_metadata.action == DedupAction.PROCESSED
    assert (await similarity.get("info", "old")).content == EXISTING
    assert len(await similarity.get_all("info")) == 2


async def test_unrelated_match_keeps_original(make_resources, similarity):
    await similarity.save("info", "old", EXISTING, VECTORS[EXISTING])
    stage = make_stage(make_resources, [relationship("unrelated")])

    [out] = await dedup(stage, make_classified("r1", EXTENDED))

    assert out.dedup_metadata.action == DedupAction.NEW
    assert out.dedup_metadata.relationship == Relationship.UNRELATED
    assert out.dedup_metadata.similarity_score == pytest.approx(0.9939, abs=1e-3)
    assert out.final_content == EXTENDED
    assert (await similarity.get("info", "r1")).content == EXTENDED


async def test_judgment_failure_is_counted_separately(make_resources, similarity):
    await similarity.save("info", "old", EXISTING, VECTORS[EXISTING])
    stage = make_stage(make_resources, [RuntimeError("LLM Error: 500")])

    assert await dedup(stage, make_classified("r1", EXTENDED)) == []
    assert stage.counters["ai_failed"] == 1
    assert stage.counters["skipped"] == 0
    assert await similarity.get("info", "r1") is None


async def test_processed_content_is_truncated(make_resources, similarity):
    await similarity.save("info", "old", EXISTING, VECTORS[EXISTING])
    long_text = "y" * 9000
    stage = make_stage(make_resources, [relationship("new_contains_existing", processed=long_text)])

    [out] = await dedup(stage, make_classified("r1", EXTENDED))

    assert len(out.final_content) == 8000
    assert len((await similarity.get("info", "r1")).content) == 8000


async def test_judgment_is_anchored_to_highest_similarity_match(make_resources, similarity):
    await similarity.save("info", "a-weaker", "weaker match", [0.8, 0.6, 0.0, 0.0])
    await similarity.save("info", "b-best", "best match", [1.0, 0.0, 0.0, 0.0])
    await similarity.save("info", "c-far", "far away", [0.0, 0.0, 0.0, 1.0])
    llm = FakeLLM([relationship("partial_overlap", processed=EXTRACTED, time_effective=True, update=True)])
    stage = DeduplicateStage(stage_settings("deduplicate"), make_resources(llm, FakeEmbedder(VECTORS)))

    [out] = await dedup(stage, make_classified("r1", EXISTING))

    assert out.dedup_metadata.matched_record_id == "b-best"
    assert (await similarity.get("info", "b-best")).content == EXTRACTED
    assert (await similarity.get("info", "a-weaker")).content == "weaker match"
    prompt = llm.prompts[0]
    assert prompt.index("best match") < prompt.index("weaker match")
    assert "far away" not in prompt


async def test_embedding_failure_drops_record(make_resources):
    stage = make_stage(make_resources, [], embedder=FakeEmbedder(VECTORS, fail_on=[EXISTING]))

    assert await dedup(stage, make_classified("r1", EXISTING)) == []
    assert stage.counters["embed_failed"] == 1


def test_stage_requires_similarity_store():
    with pytest.raises(ValueError):
        DeduplicateStage(stage_settings("deduplicate"), StageResources(embedder=FakeEmbedder()))
