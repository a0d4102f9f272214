from feedsignal.core.models import Category, ClassifiedRecord, EventKind, PipelineEvent
from feedsignal.steps.classify import ClassifyStage

from conftest import FakeLLM, make_record, relevance, stage_settings


def events_for(records, flow_id="flow-test"):
    return [PipelineEvent(kind=EventKind.RECORD_RECEIVED, payload=r, flow_id=flow_id) for r in records]


async def test_only_relevant_records_pass(make_resources):
    verdicts = {i: ("relevant" if i in (1, 4, 8) else ["spam", "entertainment", "other"][i % 3]) for i in range(10)}
    llm = FakeLLM(lambda prompt: relevance(verdicts[int(prompt.split("item-")[1].split()[0])]))
    stage = ClassifyStage(stage_settings("classify"), make_resources(llm))

    records = [make_record(f"r{i}", f"item-{i} news", seconds=i) for i in range(10)]
    outputs = await stage.run(events_for(records))

    assert [e.record_id for e in outputs] == ["r1", "r4", "r8"]
    assert all(e.kind == EventKind.RECORD_CLASSIFIED for e in outputs)
    assert all(isinstance(e.payload, ClassifiedRecord) for e in outputs)
    assert outputs[0].payload.category == Category.RELEVANT
    assert outputs[0].payload.classification_reason == "because"
    assert stage.counters["received"] == 10
    assert stage.counters["classified"] == 10
    assert stage.counters["relevant"] == 3
    assert stage.counters["dropped"] == 7
    assert stage.counters["failed"] == 0
    assert (stage.counters["spam"], stage.counters["entertainment"], stage.counters["other"]) == (4, 1, 2)


async def test_failure_of_one_record_is_isolated(make_resources, tracker):
    replies = [relevance("relevant"), RuntimeError("LLM Error: timeout")] + [relevance("relevant")] * 3
    stage = ClassifyStage(stage_settings("classify"), make_resources(FakeLLM(replies)))

    records = [make_record(f"r{i}", f"text {i}", seconds=i) for i in range(1, 6)]
    outputs = await stage.run(events_for(records))

    assert [e.record_id for e in outputs] == ["r1", "r3", "r4", "r5"]
    assert stage.counters["failed"] == 1
    assert stage.counters["classified"] == 4

    latest = await tracker.get_latest(stage.stage_name)
    assert latest.input_record_ids == ["r1", "r2", "r3", "r4", "r5"]
    assert latest.output_record_ids == ["r1", "r3", "r4", "r5"]
    assert len(latest.warnings) == 1 and "r2" in latest.warnings[0]
    assert latest.internal_state["failed"] == 1
    assert len(latest.external_calls) == 4


async def test_batch_is_processed_in_created_at_order(make_resources):
    llm = FakeLLM(lambda prompt: relevance("relevant"))
    stage = ClassifyStage(stage_settings("classify"), make_resources(llm))

    records = [make_record("late", "late", seconds=30), make_record("early", "early", seconds=1),
               make_record("mid", "mid", seconds=10)]
    outputs = await stage.run(events_for(records))

    assert [e.record_id for e in outputs] == ["early", "mid", "late"]
    assert "early" in llm.prompts[0]


async def test_empty_content_is_dropped_without_a_call(make_resources):
    llm = FakeLLM([])
    stage = ClassifyStage(stage_settings("classify"), make_resources(llm))

    outputs = await stage.run(events_for([make_record("r1", "   ")]))

    assert outputs == []
    assert llm.prompts == []
    assert stage.counters["dropped"] == 1


async def test_unexpected_exception_is_counted_as_error(make_resources):
    def reply(prompt):
        if "boom" in prompt:
            raise KeyError("unexpected")
        return relevance("relevant")

    stage = ClassifyStage(stage_settings("classify"), make_resources(FakeLLM(reply)))
    outputs = await stage.run(events_for([make_record("r1", "boom"), make_record("r2", "fine", seconds=1)]))

    assert [e.record_id for e in outputs] == ["r2"]
    assert stage.counters["errors"] == 1


async def test_stage_registers_itself_and_logs_execution(make_resources, registry):
    stage = ClassifyStage(stage_settings("classify"), make_resources(FakeLLM(lambda p: relevance("spam"))))
    await stage.run(events_for([make_record("r1", "buy now")]))

    assert "ClassifyStage" in registry
    assert stage.controller_id.startswith("ctrl-")
    assert stage.execution_log[0]["inputs"] == 1
    assert stage.execution_log[0]["outputs"] == 0
    assert stage.execution_log[0]["tokens"] == 10
