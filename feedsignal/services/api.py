import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from ..core.models import SourceKind, SourceRecord, flatten_metadata, utc_now
from ..core.orchestrator import PipelineOrchestrator
from ..ingest.manager import SubscriptionManager
from ..ingest.subscriber import CursorStore
from ..tracking.tracker import ExecutionTracker


class InjectedPayload(BaseModel):
    record_id: Optional[str] = Field(default=None, alias="recordId")
    entity_id: str = Field(default="test-entity", alias="entityId")
    entity_name: str = Field(default="Test Source", alias="entityName")
    kind: SourceKind = Field(default=SourceKind.INFO, alias="dataSourceType")
    content: str = ""
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    model_config = {"populate_by_name": True}

    def to_source_record(self) -> SourceRecord:
        return SourceRecord(
            record_id=self.record_id or f"test-{uuid.uuid4().hex[:12]}",
            entity_id=self.entity_id,
            entity_name=self.entity_name,
            kind=self.kind,
            content=self.content,
            metadata=flatten_metadata(self.metadata or {}),
            created_at=self.created_at or utc_now(),
        )


class InjectedEvent(BaseModel):
    payload: InjectedPayload = Field(default_factory=InjectedPayload)


class InjectFlowRequest(BaseModel):
    events: List[InjectedEvent]
    flow_id: Optional[str] = Field(default=None, alias="flowId")
    # run every stage until the flow has drained before answering
    wait: bool = False
    timeout: float = 120.0

    model_config = {"populate_by_name": True}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    orchestrator: PipelineOrchestrator,
    tracker: ExecutionTracker,
    manager: Optional[SubscriptionManager] = None,
    cursors: Optional[CursorStore] = None,
    port: Optional[int] = None,
) -> FastAPI:
    """Operational HTTP surface: flow injection and execution-trace queries."""
    app = FastAPI(title="feedsignal pipeline")

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------
    @app.post("/api/test/inject-flow")
    async def inject_flow(request: InjectFlowRequest):
        records = [e.payload.to_source_record() for e in request.events]
        flow_id = await orchestrator.inject_flow(records, flow_id=request.flow_id)
        if request.wait:
            await orchestrator.drain(timeout=request.timeout)
        return {
            "success": True,
            "flowId": flow_id,
            "eventsInjected": len(records),
            "recordIds": [r.record_id for r in records],
            "message": f"Flow {flow_id} started with {len(records)} events",
        }

    @app.get("/api/flows")
    async def list_flows(limit: int = Query(50, ge=1, le=1000)):
        flows = []
        for flow in await tracker.get_all_flows(limit):
            flows.append({
                "flowId": flow.flow_id,
                "status": flow.status,
                "inputEventCount": len(flow.input_record_ids),
                "outputEventCount": len(flow.output_record_ids),
                "controllersTriggered": len(flow.controllers),
                "startTime": flow.start_time,
                "endTime": flow.end_time,
                "processingTime": flow.end_time - flow.start_time if flow.end_time else None,
            })
        return {"total": len(flows), "flows": flows}

    @app.get("/api/flow/{flow_id}")
    async def get_flow(flow_id: str):
        trace = await tracker.get_flow_trace(flow_id)
        if trace is None:
            return _error(404, "Flow not found")
        return trace

    @app.delete("/api/handler/clear-cache")
    async def clear_cache():
        deleted = await tracker.clear_all()
        return {"success": True, "deleted": deleted, "message": "All tracking data cleared successfully"}

    # ------------------------------------------------------------------
    # Controllers
    # ------------------------------------------------------------------
    @app.get("/api/controllers/available")
    async def available_controllers():
        controllers = await tracker.get_available_controllers()
        return {"controllers": controllers, "count": len(controllers), "timestamp": utc_now().isoformat()}

    @app.get("/api/controller/{name}/executions")
    async def controller_executions(name: str, limit: int = Query(10, ge=1, le=100)):
        history = await tracker.get_controller_history(name, limit)
        return {
            "controllerName": name,
            "executionCount": len(history),
            "executions": [h.model_dump() for h in history],
        }

    @app.get("/api/controller/{name}/flow/{flow_id}")
    async def controller_flow(name: str, flow_id: str):
        trace = await tracker.get_flow_trace(flow_id)
        if trace is None:
            return _error(404, "Flow not found")
        execution = await tracker.get_controller_flow(name, flow_id)
        if execution is None:
            return _error(404, "Controller not found in this flow")
        return {"flowId": flow_id, "controllerName": name, "data": execution.model_dump()}

    # ------------------------------------------------------------------
    # Health & status
    # ------------------------------------------------------------------
    @app.get("/api/datasource/status")
    async def datasource_status():
        status: Dict[str, Any] = manager.get_status() if manager else {
            "total_entities": 0, "active_subscriptions": 0, "entities": [],
        }
        if cursors is not None:
            status["cursors"] = await cursors.stats()
        return status

    @app.get("/api/health")
    async def health():
        return {
            "status": "healthy",
            "port": port,
            "trackingEnabled": tracker is not None,
            "stages": orchestrator.queue_sizes(),
            "openFlows": len(orchestrator.open_flows()),
            "timestamp": utc_now().isoformat(),
        }

    logger.debug(f"[API] routes: {[r.path for r in app.routes]}")
    return app
