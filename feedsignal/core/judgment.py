"""
The three judgment calls the stages make against the language model:

- classify(record)                      -> Classification
- compare_relationship(content, matches) -> RelationshipJudgment
- summarize(record)                     -> signal text

Each returns (result, ExternalCallSummary). Any failure (transport error,
unparseable or invalid JSON, empty answer) raises JudgmentCallFailed; the
stage decides what that means for the record.

Per-call settings (model, temperature, max_tokens, prompt_template,
system_prompt) come from the calling stage's config.
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .errors import JudgmentCallFailed
from .llm import LLMService
from .models import (
    Classification,
    ExternalCallSummary,
    RelationshipJudgment,
    SimilarityEntry,
    SourceRecord,
)
from ..configs import prompts

DIGEST_CHARS = 500

# Labels some prompts/models use for the relevant category
_CATEGORY_ALIASES = {"investment": "relevant", "valuable": "relevant"}


def _clean_json(content: str) -> str:
    """Strips Markdown code fences and trailing commas, keeps the outermost JSON object."""
    content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content.strip(), flags=re.IGNORECASE)
    start, end = content.find("{"), content.rfind("}")
    if start != -1 and end > start:
        content = content[start:end + 1]
    content = re.sub(r",\s*(?=[\]}])", "", content)
    return content


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _summary(prompt: str, response: str, model: str, tokens: Optional[int]) -> ExternalCallSummary:
    return ExternalCallSummary(
        prompt_digest=prompt[:DIGEST_CHARS],
        response_digest=(response or "")[:DIGEST_CHARS],
        model=model,
        tokens=tokens,
    )


def format_existing_contents(matches: Sequence[Tuple[SimilarityEntry, float]]) -> str:
    return "\n\n".join(
        prompts.DEDUP_EXISTING_ITEM_TMPL.format(
            index=i,
            score=score,
            short_id=entry.id[:8],
            content=entry.content,
        )
        for i, (entry, score) in enumerate(matches, 1)
    )


class JudgmentService:
    def __init__(self, llm: LLMService, defaults: Optional[Dict[str, Any]] = None):
        self.llm = llm
        self.defaults = defaults or {}

    def _settings(self, options: Optional[Dict[str, Any]], default_template: str, default_system: str) -> Dict[str, Any]:
        merged = {**self.defaults, **(options or {})}
        merged.setdefault("prompt_template", default_template)
        merged.setdefault("system_prompt", default_system)
        if not merged.get("model"):
            raise ValueError("Judgment call needs a 'model' setting")
        return merged

    async def _ask(self, prompt: str, settings: Dict[str, Any], json_mode: bool) -> Tuple[str, Optional[int]]:
        model = settings["model"]
        try:
            return await self.llm.complete(
                prompt=prompt,
                model=model,
                temperature=settings.get("temperature", 0.0),
                max_tokens=settings.get("max_tokens"),
                system_prompt=settings.get("system_prompt"),
                json_mode=json_mode and settings.get("json_mode", True),
            )
        except RuntimeError as e:
            raise JudgmentCallFailed(str(e), model=model) from e

    def _parse_json(self, raw: str, model: str) -> Dict[str, Any]:
        try:
            data = json.loads(_clean_json(raw))
        except json.JSONDecodeError as e:
            raise JudgmentCallFailed(f"Unparseable JSON from {model}: {e}", model=model) from e
        if not isinstance(data, dict):
            raise JudgmentCallFailed(f"Expected a JSON object from {model}, got {type(data).__name__}", model=model)
        return data

    async def classify(
        self, record: SourceRecord, options: Optional[Dict[str, Any]] = None
    ) -> Tuple[Classification, ExternalCallSummary]:
        settings = self._settings(options, prompts.CLASSIFY_TMPL, prompts.CLASSIFY_SYSTEM)
        prompt = settings["prompt_template"].format(
            entity_name=record.entity_name,
            kind=record.kind.value,
            content=record.content,
        )
        raw, tokens = await self._ask(prompt, settings, json_mode=True)
        data = self._parse_json(raw, settings["model"])

        category = str(data.get("category", "")).strip().lower()
        data["category"] = _CATEGORY_ALIASES.get(category, category)
        data["reason"] = str(data.get("reason") or data.get("reasons") or "")[:1000]
        try:
            result = Classification.model_validate(data)
        except ValidationError as e:
            raise JudgmentCallFailed(f"Invalid classification from {settings['model']}: {e}", model=settings["model"]) from e
        return result, _summary(prompt, raw, settings["model"], tokens)

    async def compare_relationship(
        self,
        new_content: str,
        matches: List[Tuple[SimilarityEntry, float]],
        options: Optional[Dict[str, Any]] = None,
    ) -> Tuple[RelationshipJudgment, ExternalCallSummary]:
        """`matches` is best-first; the first one anchors the judgment, the rest are context."""
        settings = self._settings(options, prompts.DEDUP_TMPL, prompts.DEDUP_SYSTEM)
        prompt = settings["prompt_template"].format(
            new_content=new_content,
            existing_contents=format_existing_contents(matches),
        )
        raw, tokens = await self._ask(prompt, settings, json_mode=True)
        data = {_snake_case(k): v for k, v in self._parse_json(raw, settings["model"]).items()}
        if isinstance(data.get("relationship"), str):
            data["relationship"] = data["relationship"].strip().lower()
        if not data.get("processed_content"):
            data["processed_content"] = None
        try:
            result = RelationshipJudgment.model_validate(data)
        except ValidationError as e:
            raise JudgmentCallFailed(f"Invalid relationship judgment from {settings['model']}: {e}", model=settings["model"]) from e
        return result, _summary(prompt, raw, settings["model"], tokens)

    async def summarize(
        self, record: SourceRecord, content: str, options: Optional[Dict[str, Any]] = None
    ) -> Tuple[str, ExternalCallSummary]:
        settings = self._settings(options, prompts.SIGNAL_TMPL, prompts.SIGNAL_SYSTEM)
        prompt = settings["prompt_template"].format(
            entity_name=record.entity_name,
            kind=record.kind.value,
            published_at=record.created_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip(),
            content=content,
        )
        text, tokens = await self._ask(prompt, settings, json_mode=False)
        if not text:
            raise JudgmentCallFailed(f"Empty signal text from {settings['model']}", model=settings["model"])
        return text, _summary(prompt, text, settings["model"], tokens)
