import os
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .prompts import (
    CLASSIFY_SYSTEM,
    CLASSIFY_TMPL,
    DEDUP_SYSTEM,
    DEDUP_TMPL,
    SIGNAL_SYSTEM,
    SIGNAL_TMPL,
)

BASE_TEMPERATURE = 0.0
BASE_MODEL = "qwen-plus"


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _csv(value: Optional[str]):
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def build_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Pipeline config dict from environment variables (defaults to os.environ plus .env)."""
    env = os.environ if env is None else env
    model = env.get("LLM_MODEL", BASE_MODEL)
    signal_model = env.get("SIGNAL_MODEL", model)

    return {
        "name": env.get("PIPELINE_NAME", "feedsignal"),
        "run_id": env.get("RUN_ID"),
        "debug": _flag(env.get("DEBUG")),
        "log_level": env.get("LOG_LEVEL", "INFO"),

        "llm_settings": {
            "base_url": env.get("LLM_BASE_URL", "http://localhost:11434/v1"),
            "api_key": env.get("LLM_API_KEY", "ollama"),
            "timeout": float(env.get("LLM_TIMEOUT", "60")),
        },

        "embedding": {
            # "openai" (embeddings endpoint of llm_settings) or "local" (sentence-transformers)
            "provider": env.get("EMBEDDING_PROVIDER", "openai"),
            "model": env.get("EMBEDDING_MODEL", "text-embedding-3-small"),
            "dimensions": int(env.get("EMBEDDING_DIMENSIONS", "1536")),
        },

        "storage": {
            "redis_url": env.get("REDIS_URL"),
            "cursor_prefix": env.get("CURSOR_KEY_PREFIX", "feedsignal:datasource:"),
            "vector_prefix": env.get("VECTOR_KEY_PREFIX", "vector"),
        },

        "datasource": {
            "base_url": env.get("DATASOURCE_BASE_URL", "http://localhost:3000"),
            "api_key": env.get("DATASOURCE_API_KEY", ""),
            "timeout": float(env.get("DATASOURCE_TIMEOUT", "30")),
            "rate_limit": float(env.get("DATASOURCE_RATE_LIMIT", "5")),          # requests / second
            "subscription_interval": float(env.get("SUBSCRIPTION_INTERVAL", "180")),  # seconds
            "interval_jitter": float(env.get("SUBSCRIPTION_INTERVAL_JITTER", "120")),
            "subscription_start_delay": float(env.get("SUBSCRIPTION_START_DELAY", "5")),
            "limit": int(env.get("SUBSCRIPTION_LIMIT", "40")),
            "disable_timestamp_cache": _flag(env.get("DISABLE_TIMESTAMP_CACHE")),
            # empty -> every entity the source lists
            "subscriptions": _csv(env.get("DATASOURCE_SUBSCRIPTIONS")),
            "debug": _flag(env.get("DATASOURCE_DEBUG")),
        },

        "tracking": {
            "enabled": _flag(env.get("TRACKING_ENABLED"), default=True),
            "trace_ttl": int(env.get("TRACE_TTL", "3600")),
            "flow_history_limit": int(env.get("FLOW_HISTORY_LIMIT", "100")),
            "batch_history_limit": int(env.get("BATCH_HISTORY_LIMIT", "1000")),
        },

        "api": {
            "enabled": _flag(env.get("API_ENABLED"), default=True),
            "host": env.get("API_HOST", "0.0.0.0"),
            "port": int(env.get("API_PORT", "8101")),
        },

        "stages": [
            {
                "type": "classify",
                "settings": {
                    "name": "ClassifyStage",
                    "model": model,
                    "temperature": BASE_TEMPERATURE,
                    "max_tokens": 256,
                    "prompt_template": CLASSIFY_TMPL,
                    "system_prompt": CLASSIFY_SYSTEM,
                    "process_interval": 5.0,
                }
            },
            {
                "type": "deduplicate",
                "settings": {
                    "name": "DeduplicateStage",
                    "model": model,
                    "temperature": BASE_TEMPERATURE,
                    "max_tokens": 2048,
                    "prompt_template": DEDUP_TMPL,
                    "system_prompt": DEDUP_SYSTEM,
                    "process_interval": 8.0,
                    "partition": "info",
                    "top_k": 3,
                    "similarity_threshold": 0.6,
                    "max_processed_chars": 8000,
                }
            },
            {
                "type": "signal",
                "settings": {
                    "name": "SignalStage",
                    "model": signal_model,
                    "temperature": 0.3,
                    "max_tokens": 1024,
                    "prompt_template": SIGNAL_TMPL,
                    "system_prompt": SIGNAL_SYSTEM,
                    "process_interval": 10.0,
                }
            },
        ],
    }


load_dotenv()
DEFAULT_CONFIG = build_config()
