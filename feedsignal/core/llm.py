import asyncio
import uuid
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import openai

from .errors import EmbeddingFailed
from .logging import PipelineObserver


class LLMService:
    """Async chat-completions client for any OpenAI-compatible server."""

    def __init__(self, config: Dict[str, Any], observer: Optional[PipelineObserver] = None):
        self.base_url = config.get("base_url", "http://localhost:11434/v1")
        self.api_key = config.get("api_key", "ollama")
        self.timeout = float(config.get("timeout", 60.0))
        self.client = openai.AsyncOpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout)

        self.observer = observer

        # Accumulators
        self.token_usage = {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0
        }

    async def complete(self,
                       prompt: str,
                       model: str,
                       temperature: float,
                       max_tokens: Optional[int] = None,
                       system_prompt: Optional[str] = None,
                       json_mode: bool = False,
                       ) -> Tuple[str, Optional[int]]:
        """Returns (content, total_tokens for this call or None)."""

        # Validation
        if max_tokens is not None and max_tokens <= 0:
            raise ValueError("max_tokens must be a positive integer")
        if temperature is None or temperature < 0:
            raise ValueError("temperature must be a positive float")

        call_id = uuid.uuid4().hex

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        if self.observer:
            self.observer.on_artifact(
                "LLM Prompt",
                {
                    "call_id": call_id,
                    "model": model,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "system": system_prompt,
                    "prompt": prompt,
                },
            )

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except Exception as e:
            if self.observer:
                self.observer.on_artifact(
                    "LLM Usage Stats",
                    {
                        "call_id": call_id,
                        "model": model,
                        "prompt": None,
                        "completion": None,
                        "total": None,
                        "error": str(e),
                    },
                )
            raise RuntimeError(f"LLM Service Error [Model: {model}]: {e}") from e

        # --- TRACK USAGE ---
        usage_data = {
            "call_id": call_id,
            "model": model,
            "prompt": None,
            "completion": None,
            "total": None,
        }
        if response.usage:
            u = response.usage
            self.token_usage["prompt_tokens"] += u.prompt_tokens
            self.token_usage["completion_tokens"] += u.completion_tokens
            self.token_usage["total_tokens"] += u.total_tokens
            usage_data["prompt"] = u.prompt_tokens
            usage_data["completion"] = u.completion_tokens
            usage_data["total"] = u.total_tokens

        if self.observer:
            self.observer.on_artifact("LLM Usage Stats", usage_data)

        if not response.choices:
            raise RuntimeError(f"LLM Service Error [Model: {model}]: empty choices")
        content = response.choices[0].message.content
        return (content.strip() if content else ""), usage_data["total"]


class OpenAIEmbedder:
    """Embeddings endpoint of an OpenAI-compatible server, fixed output dimensions."""

    def __init__(self, config: Dict[str, Any], model: str, dimensions: int):
        self.model = model
        self.dimensions = dimensions
        self.client = openai.AsyncOpenAI(
            base_url=config.get("base_url", "http://localhost:11434/v1"),
            api_key=config.get("api_key", "ollama"),
            timeout=float(config.get("timeout", 60.0)),
        )

    async def embed(self, text: str) -> List[float]:
        try:
            response = await self.client.embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dimensions,
            )
        except Exception as e:
            raise EmbeddingFailed(f"Embedding Error [Model: {self.model}]: {e}", model=self.model) from e

        vector = list(response.data[0].embedding)
        if len(vector) != self.dimensions:
            raise EmbeddingFailed(
                f"Embedding Error [Model: {self.model}]: got {len(vector)} dims, expected {self.dimensions}",
                model=self.model,
            )
        return vector


_MODEL_CACHE: Dict[str, Any] = {}


def _load_sentence_transformer(model_name: str):
    if model_name not in _MODEL_CACHE:
        from sentence_transformers import SentenceTransformer
        _MODEL_CACHE[model_name] = SentenceTransformer(model_name)
    return _MODEL_CACHE[model_name]


class LocalEmbedder:
    """sentence-transformers model, loaded once per model name and run off the event loop."""

    def __init__(self, model: str = "sentence-transformers/all-MiniLM-L6-v2"):
        self.model = model
        self._st = _load_sentence_transformer(model)
        self.dimensions = int(self._st.get_sentence_embedding_dimension())

    def _encode(self, text: str) -> List[float]:
        vec = self._st.encode([text], normalize_embeddings=True)
        return np.asarray(vec, dtype=np.float32)[0].tolist()

    async def embed(self, text: str) -> List[float]:
        try:
            return await asyncio.to_thread(self._encode, text)
        except Exception as e:
            raise EmbeddingFailed(f"Embedding Error [Model: {self.model}]: {e}", model=self.model) from e


def build_embedder(embedding_config: Dict[str, Any], llm_settings: Dict[str, Any]):
    provider = embedding_config.get("provider", "openai")
    if provider == "local":
        return LocalEmbedder(embedding_config.get("model", "sentence-transformers/all-MiniLM-L6-v2"))
    if provider == "openai":
        return OpenAIEmbedder(
            embedding_config.get("settings") or llm_settings,
            model=embedding_config.get("model", "text-embedding-3-small"),
            dimensions=int(embedding_config.get("dimensions", 1536)),
        )
    raise ValueError(f"Embedding provider '{provider}' not supported.")
