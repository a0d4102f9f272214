import re
from typing import Any, Dict, List, Set

import httpx
from loguru import logger


def validate_pipeline_models(config: Dict[str, Any]):
    """
    Validates all models named in the pipeline config against the
    OpenAI-compatible server in llm_settings.
    - 'model' keys inside stage settings are chat models.
    - the embedding model is checked too when the provider is 'openai'.
    """
    logger.info("--- Validating Model Availability ---")

    models = _collect_models_recursive(config.get("stages", []))
    embedding = config.get("embedding", {})
    if embedding.get("provider", "openai") == "openai" and embedding.get("model"):
        models.add(embedding["model"])

    if not models:
        logger.info("    No models ('model') found to validate.")
        return

    errors = _validate_server_models(config, models)

    if errors:
        logger.error("[CRITICAL] MODEL VALIDATION FAILED")
        for err in errors:
            logger.error(f"   - {err}")
        raise ValueError("Pipeline cannot start due to missing models.")

    logger.info("[OK] All models validated successfully.")


def _collect_models_recursive(data: Any) -> Set[str]:
    models = set()
    if isinstance(data, dict):
        for k, v in data.items():
            if k == "model" and isinstance(v, str):
                models.add(v)
            else:
                models.update(_collect_models_recursive(v))
    elif isinstance(data, list):
        for item in data:
            models.update(_collect_models_recursive(item))
    return models


def _validate_server_models(config: Dict, models: Set[str]) -> List[str]:
    """Checks if models exist on the server (OpenAI /models, or Ollama /api/tags as a fallback)."""
    llm_settings = config.get("llm_settings", {})
    base_url = llm_settings.get("base_url", "http://localhost:11434/v1")
    headers = {}
    if llm_settings.get("api_key"):
        headers["Authorization"] = f"Bearer {llm_settings['api_key']}"

    try:
        models_url = f"{base_url.rstrip('/')}/models"

        with httpx.Client(timeout=5.0, headers=headers) as client:
            resp = client.get(models_url)

            if resp.status_code == 404:
                # Fallback to Ollama native API
                alt_url = re.sub(r"/v1$", "", base_url.rstrip('/')) + "/api/tags"
                resp = client.get(alt_url)
                resp.raise_for_status()
                available_models = {m["name"] for m in resp.json().get("models", [])}
            else:
                resp.raise_for_status()
                available_models = {m["id"] for m in resp.json().get("data", [])}

    except (httpx.HTTPError, ValueError, KeyError) as e:
        logger.warning(f"    Could not list models on LLM server: {e}")
        return [f"LLM Server Unreachable: {e}"]

    missing = []
    for req in sorted(models):
        # Check exact match or :latest match
        if req not in available_models and f"{req}:latest" not in available_models:
            logger.error(f"    LLM Model missing: {req}")
            missing.append(f"Missing model: {req}")
        else:
            logger.info(f"    [OK] {req}")

    return missing
