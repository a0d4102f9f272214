import json

import pytest

from feedsignal.core.errors import JudgmentCallFailed
from feedsignal.core.judgment import JudgmentService, _clean_json, format_existing_contents
from feedsignal.core.models import Category, Relationship, SimilarityEntry

from conftest import FakeLLM, make_record, relationship

OPTIONS = {"model": "test-model", "temperature": 0.0}


def entry(entry_id: str, content: str) -> SimilarityEntry:
    return SimilarityEntry(id=entry_id, partition="info", embedding=[1, 0, 0, 0], dimensions=4, content=content)


def test_clean_json_strips_fences_and_trailing_commas():
    raw = '```json\n{"category": "spam", "reason": "ad",}\n```'
    assert json.loads(_clean_json(raw)) == {"category": "spam", "reason": "ad"}
    assert json.loads(_clean_json('Sure! {"a": [1, 2,]} hope this helps')) == {"a": [1, 2]}


def test_existing_contents_are_numbered_best_first():
    text = format_existing_contents([(entry("abcdefghij", "first"), 0.91), (entry("xyz", "second"), 0.7)])
    assert text.index("[Existing Content 1] (similarity: 0.9100, ID: abcdefgh)") < text.index("[Existing Content 2]")
    assert "first" in text and "second" in text


async def test_classify_parses_and_summarizes_call():
    llm = FakeLLM(['{"category": "Investment", "reason": "token listing"}'])
    judge = JudgmentService(llm)

    result, call = await judge.classify(make_record("r1", "XYZ lists on a major exchange"), OPTIONS)

    assert result.category == Category.RELEVANT
    assert result.reason == "token listing"
    assert call.model == "test-model"
    assert call.tokens == 10
    assert "XYZ lists on a major exchange" in call.prompt_digest
    assert len(call.prompt_digest) <= 500


@pytest.mark.parametrize("reply", [
    "not json at all",
    '{"category": "weather", "reason": "?"}',
    "[1, 2, 3]",
    RuntimeError("LLM Error [Model: test-model]: timeout"),
])
async def test_classify_failures_raise_judgment_call_failed(reply):
    judge = JudgmentService(FakeLLM([reply]))
    with pytest.raises(JudgmentCallFailed):
        await judge.classify(make_record("r1", "content"), OPTIONS)


async def test_compare_relationship_accepts_camel_case():
    llm = FakeLLM([relationship("new_contains_existing", processed="led by Firm Y", time_effective=True)])
    judge = JudgmentService(llm)

    result, _ = await judge.compare_relationship(
        "Company X raises $10M led by Firm Y",
        [(entry("e1", "Company X raises $10M"), 0.9)],
        OPTIONS,
    )

    assert result.relationship == Relationship.NEW_CONTAINS_EXISTING
    assert result.should_skip is False
    assert result.processed_content == "led by Firm Y"
    assert result.is_time_effective is True
    assert "Company X raises $10M" in llm.prompts[0]


async def test_compare_relationship_empty_processed_content_is_none():
    judge = JudgmentService(FakeLLM([relationship("unrelated")]))
    result, _ = await judge.compare_relationship("a", [(entry("e1", "b"), 0.7)], OPTIONS)
    assert result.processed_content is None


async def test_summarize_returns_text_and_rejects_empty():
    judge = JudgmentService(FakeLLM(["Bullish on XYZ.", ""]))
    record = make_record("r1", "XYZ lists")

    text, call = await judge.summarize(record, "XYZ lists", OPTIONS)
    assert text == "Bullish on XYZ."
    assert call.response_digest == "Bullish on XYZ."

    with pytest.raises(JudgmentCallFailed):
        await judge.summarize(record, "XYZ lists", OPTIONS)


async def test_missing_model_is_a_configuration_error():
    judge = JudgmentService(FakeLLM([]))
    with pytest.raises(ValueError):
        await judge.classify(make_record("r1", "x"), {})
