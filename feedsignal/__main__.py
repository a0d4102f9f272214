import argparse
import asyncio
import copy
from typing import Any, Dict

import uvicorn
from loguru import logger

from .configs.default import DEFAULT_CONFIG
from .core.base import StageResources
from .core.errors import FeedSignalError
from .core.judgment import JudgmentService
from .core.llm import LLMService, build_embedder
from .core.models import EntityInfo, SourceRecord
from .core.orchestrator import PipelineOrchestrator
from .core.validator import validate_pipeline_models
from .ingest.client import DataSourceClient
from .ingest.manager import SubscriptionManager
from .ingest.subscriber import CursorStore, Subscriber
from .services.api import create_app
from .storage.kv import MemoryKeyValueStore, connect_kv_store
from .storage.similarity import SimilarityStore
from .tracking.tracker import ControllerRegistry, ExecutionTracker


async def run(config: Dict[str, Any], serve_api: bool = True) -> None:
    storage = config["storage"]
    tracking = config["tracking"]
    datasource = config["datasource"]

    kv = await connect_kv_store(storage.get("redis_url"))

    registry = ControllerRegistry()
    tracker = ExecutionTracker(
        kv if tracking.get("enabled", True) else MemoryKeyValueStore(),
        registry=registry,
        trace_ttl=tracking.get("trace_ttl", 3600),
        flow_history_limit=tracking.get("flow_history_limit", 100),
        batch_history_limit=tracking.get("batch_history_limit", 1000),
    )

    embedder = build_embedder(config["embedding"], config["llm_settings"])
    similarity = SimilarityStore(
        kv,
        key_prefix=storage.get("vector_prefix", "vector"),
        dimensions=getattr(embedder, "dimensions", config["embedding"].get("dimensions", 1536)),
    )
    llm = LLMService(config["llm_settings"])
    resources = StageResources(
        judge=JudgmentService(llm),
        embedder=embedder,
        similarity=similarity,
        tracker=tracker,
        registry=registry,
    )
    orchestrator = PipelineOrchestrator(config, resources)

    client = DataSourceClient(datasource)
    cursors = CursorStore(
        kv,
        prefix=storage.get("cursor_prefix", "feedsignal:datasource:"),
        enabled=not datasource.get("disable_timestamp_cache", False),
    )
    manager = SubscriptionManager(client, Subscriber(client, cursors), datasource)

    async def on_record(record: SourceRecord, entity: EntityInfo) -> None:
        await orchestrator.pump(record)

    orchestrator.start()
    try:
        try:
            await manager.initialize()
            started = manager.start_all_subscriptions(on_record, datasource.get("subscriptions") or None)
            logger.info(f"[Main] {started} subscriptions running")
        except FeedSignalError as e:
            logger.error(f"[Main] could not load entities from the record source: {e}")

        if serve_api:
            api = config["api"]
            app = create_app(orchestrator, tracker, manager=manager, cursors=cursors, port=api["port"])
            server = uvicorn.Server(uvicorn.Config(app, host=api["host"], port=api["port"], log_level="warning"))
            logger.info(f"[Main] API available at http://{api['host']}:{api['port']}/api")
            await server.serve()
        else:
            await asyncio.Event().wait()
    finally:
        logger.info("[Main] shutting down...")
        manager.stop_all_subscriptions()
        await orchestrator.stop()
        logger.info(f"[Main] LLM token usage: {llm.token_usage}")
        await client.close()
        await kv.close()


def main():
    ap = argparse.ArgumentParser(description="Poll record sources and turn them into signals.")
    ap.add_argument("--no-api", action="store_true", help="Do not start the operational HTTP API.")
    ap.add_argument("--validate-models", action="store_true", help="Check configured models on the LLM server first.")
    ap.add_argument("--port", type=int, default=None, help="Port for the HTTP API (default: API_PORT or 8101).")
    args = ap.parse_args()

    config = copy.deepcopy(DEFAULT_CONFIG)
    if args.port is not None:
        config["api"]["port"] = args.port

    if args.validate_models:
        validate_pipeline_models(config)

    try:
        asyncio.run(run(config, serve_api=config["api"].get("enabled", True) and not args.no_api))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
