import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

from feedsignal.configs.default import build_config
from feedsignal.core.base import StageResources
from feedsignal.core.errors import EmbeddingFailed
from feedsignal.core.judgment import JudgmentService
from feedsignal.core.models import Category, ClassifiedRecord, SourceRecord
from feedsignal.storage.kv import MemoryKeyValueStore
from feedsignal.storage.similarity import SimilarityStore
from feedsignal.tracking.tracker import ControllerRegistry, ExecutionTracker

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
DIMS = 4

Reply = Union[str, Exception]


class FakeLLM:
    """Stands in for LLMService. `script` is a list of replies (consumed in order) or a prompt -> reply function."""

    def __init__(self, script: Union[List[Reply], Callable[[str], Reply]], tokens: int = 10):
        self.script = script
        self.tokens = tokens
        self.observer = None
        self.prompts: List[str] = []

    async def complete(self, prompt, model, temperature, max_tokens=None, system_prompt=None, json_mode=False):
        self.prompts.append(prompt)
        reply = self.script(prompt) if callable(self.script) else self.script.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply, self.tokens


class FakeEmbedder:
    def __init__(self, vectors: Optional[Dict[str, Sequence[float]]] = None, default: Sequence[float] = (0.0, 0.0, 0.0, 1.0),
                 fail_on: Sequence[str] = ()):
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.fail_on = set(fail_on)
        self.dimensions = DIMS
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if text in self.fail_on:
            raise EmbeddingFailed(f"cannot embed {text!r}", model="fake")
        return list(self.vectors.get(text, self.default))


class RecordingObserver:
    def __init__(self):
        self.events: List[tuple] = []
        self.summary: Optional[str] = None

    def on_run_start(self, name, run_id):
        self.events.append(("run_start", name))

    def on_stage_start(self, stage_name, config, batch_size, flow_id):
        self.events.append(("stage_start", stage_name, batch_size, flow_id))

    def on_stage_end(self, stage_name, duration, tokens, batch_json, flow_id):
        self.events.append(("stage_end", stage_name, tokens, flow_id))

    def on_artifact(self, label, data):
        self.events.append(("artifact", label))

    def on_run_end(self, duration):
        self.events.append(("run_end",))

    def log_summary(self, summary_text):
        self.summary = summary_text


def relevance(category: str, reason: str = "because") -> str:
    return json.dumps({"category": category, "reason": reason})


def relationship(rel: str, skip: bool = False, processed: str = "", time_effective: bool = False,
                 update: bool = False) -> str:
    return json.dumps({
        "relationship": rel,
        "shouldSkip": skip,
        "processedContent": processed,
        "isTimeEffective": time_effective,
        "shouldUpdate": update,
        "reasoning": "test",
    })


def make_record(record_id: str, content: str, seconds: float = 0, entity_id: str = "ent-1",
                entity_name: str = "Alpha Feed") -> SourceRecord:
    return SourceRecord(
        record_id=record_id,
        entity_id=entity_id,
        entity_name=entity_name,
        content=content,
        created_at=BASE_TIME + timedelta(seconds=seconds),
    )


def make_classified(record_id: str, content: str, seconds: float = 0) -> ClassifiedRecord:
    return ClassifiedRecord(**make_record(record_id, content, seconds).model_dump(), category=Category.RELEVANT)


def stage_settings(stage_type: str, **overrides: Any) -> Dict[str, Any]:
    config = build_config({})
    settings = next(s["settings"] for s in config["stages"] if s["type"] == stage_type)
    return {**settings, "model": "test-model", **overrides}


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def registry():
    return ControllerRegistry()


@pytest.fixture
def tracker(kv, registry):
    return ExecutionTracker(kv, registry=registry)


@pytest.fixture
def similarity(kv):
    return SimilarityStore(kv, dimensions=DIMS)


@pytest.fixture
def make_resources(registry, tracker, similarity):
    def _make(llm: FakeLLM, embedder: Optional[FakeEmbedder] = None) -> StageResources:
        return StageResources(
            judge=JudgmentService(llm),
            embedder=embedder or FakeEmbedder(),
            similarity=similarity,
            tracker=tracker,
            registry=registry,
        )

    return _make
