from feedsignal.core.models import (
    DedupAction,
    DedupMetadata,
    DeduplicatedRecord,
    EventKind,
    PipelineEvent,
    SignalRecord,
)
from feedsignal.steps.signal import SignalStage

from conftest import FakeLLM, make_classified, stage_settings


def admitted(record_id: str, content: str, final_content: str = None, seconds: float = 0) -> DeduplicatedRecord:
    return DeduplicatedRecord(
        **make_classified(record_id, content, seconds).model_dump(),
        final_content=final_content or content,
        dedup_metadata=DedupMetadata(action=DedupAction.NEW),
    )


def events_for(records):
    return [PipelineEvent(kind=EventKind.RECORD_DEDUPLICATED, payload=r, flow_id="flow-s") for r in records]


async def test_signal_carries_text_model_and_final_content(make_resources):
    llm = FakeLLM(["Long XYZ: exchange listing usually lifts volume."])
    stage = SignalStage(stage_settings("signal", model="signal-model"), make_resources(llm))

    [out] = await stage.run(events_for([admitted("r1", "XYZ lists on Binance and more", final_content="XYZ lists")]))

    assert out.kind == EventKind.SIGNAL_GENERATED
    signal = out.payload
    assert isinstance(signal, SignalRecord)
    assert signal.signal_text.startswith("Long XYZ")
    assert signal.model == "signal-model"
    assert signal.source_content == "XYZ lists"
    assert signal.entity_name == "Alpha Feed"
    assert "[Original Content] XYZ lists" in llm.prompts[0]
    assert "Alpha Feed" in llm.prompts[0]


async def test_failed_generation_is_skipped_and_counted(make_resources, tracker):
    llm = FakeLLM(["one", RuntimeError("LLM Error: overloaded"), "three"])
    stage = SignalStage(stage_settings("signal"), make_resources(llm))

    records = [admitted(f"r{i}", f"content {i}", seconds=i) for i in range(3)]
    outputs = await stage.run(events_for(records))

    assert [e.record_id for e in outputs] == ["r0", "r2"]
    assert stage.counters["processed"] == 3
    assert stage.counters["generated"] == 2
    assert stage.counters["failed"] == 1
    latest = await tracker.get_latest("SignalStage")
    assert len(latest.warnings) == 1
