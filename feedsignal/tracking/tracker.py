"""
Execution tracker: what every stage ("controller") did with every batch of
every flow, persisted in the key-value store.

Keys (trace keys expire after trace_ttl seconds):
    controller:{name}:flow:{flow}:batch     counter, incremented per batch
    controller:{name}:flow:{flow}:batches   list of FlowExecutionRecord JSON, newest first, trimmed to batch_history_limit
    controller:{name}:flow:{flow}:summary   FlowSummary JSON
    controller:{name}:flows                 flow ids, newest first, trimmed to flow_history_limit
    controller:{name}:latest                latest FlowExecutionRecord JSON
    controller:instance:{controller_id}     latest batch of one controller instance
    flow:{flow}                             FlowData JSON
    flow:{flow}:controllers                 set of controller names that saw the flow
"""

import random
import re
import string
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, TypeVar

from loguru import logger
from redis.exceptions import RedisError

from ..core.errors import PersistenceUnavailable
from ..core.models import (
    ControllerFlowExecution,
    FlowData,
    FlowExecutionRecord,
    FlowSummary,
    now_ms,
)
from ..storage.kv import KeyValueStore, MemoryKeyValueStore

T = TypeVar("T")

NO_FLOW = "no-flow"
_STORE_ERRORS = (RedisError, OSError, PersistenceUnavailable)
_FLOWS_KEY = re.compile(r"^controller:(.+):flows$")


class ControllerRegistry:
    """Names of the stages running in this process."""

    def __init__(self, names: Optional[Sequence[str]] = None):
        self._names = set(names or ())

    def register(self, name: str) -> None:
        if name not in self._names:
            self._names.add(name)
            logger.debug(f"[ControllerRegistry] registered {name}")

    def names(self) -> List[str]:
        return sorted(self._names)

    def __contains__(self, name: str) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())


def generate_controller_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"ctrl-{now_ms()}-{suffix}"


def generate_flow_id() -> str:
    return f"flow-{datetime.now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6]}"


class ExecutionTracker:
    def __init__(
        self,
        kv: KeyValueStore,
        registry: Optional[ControllerRegistry] = None,
        trace_ttl: int = 3600,
        flow_history_limit: int = 100,
        batch_history_limit: int = 1000,
    ):
        self.kv = kv
        self.registry = registry if registry is not None else ControllerRegistry()
        self.trace_ttl = trace_ttl
        self.flow_history_limit = flow_history_limit
        self.batch_history_limit = batch_history_limit
        self.degraded = False

    # -- degrade path ------------------------------------------------------
    async def _guard(self, action: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except _STORE_ERRORS as e:
            if self.degraded:
                raise
            logger.warning(f"[ExecutionTracker] {action} failed ({e}); tracking continues in memory only")
            self.kv = MemoryKeyValueStore()
            self.degraded = True
            return await fn()

    @staticmethod
    def _controller_flow_key(controller_name: str, flow_id: str) -> str:
        return f"controller:{controller_name}:flow:{flow_id}"

    # -- flows -------------------------------------------------------------
    async def track_flow_start(self, flow_id: str, input_record_ids: Sequence[str]) -> FlowData:
        flow = FlowData(flow_id=flow_id, input_record_ids=list(input_record_ids))

        async def write():
            await self.kv.set_with_expiry(f"flow:{flow_id}", flow.model_dump_json(), self.trace_ttl)

        await self._guard("track_flow_start", write)
        logger.info(f"[ExecutionTracker] started flow {flow_id} with {len(flow.input_record_ids)} input records")
        return flow

    async def track_flow_end(self, flow_id: str, output_record_ids: Sequence[str]) -> Optional[FlowData]:
        async def write() -> Optional[FlowData]:
            raw = await self.kv.get(f"flow:{flow_id}")
            if raw is None:
                return None
            flow = FlowData.model_validate_json(raw)
            flow.output_record_ids = list(output_record_ids)
            flow.end_time = now_ms()
            flow.status = "completed"
            flow.controllers = await self.kv.smembers(f"flow:{flow_id}:controllers")
            await self.kv.set_with_expiry(f"flow:{flow_id}", flow.model_dump_json(), self.trace_ttl)
            return flow

        flow = await self._guard("track_flow_end", write)
        if flow is not None:
            logger.info(
                f"[ExecutionTracker] completed flow {flow_id}: {len(flow.input_record_ids)} in -> "
                f"{len(flow.output_record_ids)} out, took {flow.end_time - flow.start_time}ms"
            )
        return flow

    # -- per-batch tracking ------------------------------------------------
    async def track_controller(self, controller_id: str, flow_id: Optional[str], data: FlowExecutionRecord) -> FlowExecutionRecord:
        flow_id = flow_id or NO_FLOW
        name = data.controller_name
        self.registry.register(name)
        base = self._controller_flow_key(name, flow_id)

        async def write() -> FlowExecutionRecord:
            batch_number = await self.kv.incr(f"{base}:batch")
            await self.kv.expire(f"{base}:batch", self.trace_ttl)

            record = data.model_copy(update={
                "controller_id": controller_id,
                "flow_id": flow_id,
                "batch_number": batch_number,
            })
            record_json = record.model_dump_json()

            await self.kv.set_with_expiry(f"controller:instance:{controller_id}", record_json, self.trace_ttl)
            await self.kv.sadd(f"flow:{flow_id}:controllers", name)
            await self.kv.expire(f"flow:{flow_id}:controllers", self.trace_ttl)

            await self.kv.lpush(f"{base}:batches", record_json)
            await self.kv.ltrim(f"{base}:batches", 0, self.batch_history_limit - 1)
            await self.kv.expire(f"{base}:batches", self.trace_ttl)

            raw = await self.kv.get(f"{base}:summary")
            if raw:
                summary = FlowSummary.model_validate_json(raw)
            else:
                summary = FlowSummary(
                    controller_name=name,
                    flow_id=flow_id,
                    first_batch_time=record.timestamp,
                    last_batch_time=record.timestamp,
                )
            summary = summary.model_copy(update={
                "total_batches": batch_number,
                "total_input_events": summary.total_input_events + len(record.input_record_ids),
                "total_output_events": summary.total_output_events + len(record.output_record_ids),
                "total_processing_time_ms": summary.total_processing_time_ms + record.processing_time_ms,
                "first_batch_time": min(summary.first_batch_time, record.timestamp),
                "last_batch_time": max(summary.last_batch_time, record.timestamp),
            })
            await self.kv.set_with_expiry(f"{base}:summary", summary.model_dump_json(), self.trace_ttl)

            if batch_number == 1:
                await self.kv.lpush(f"controller:{name}:flows", flow_id)
                await self.kv.ltrim(f"controller:{name}:flows", 0, self.flow_history_limit - 1)

            await self.kv.set(f"controller:{name}:latest", record_json)
            return record

        record = await self._guard("track_controller", write)
        logger.debug(
            f"[ExecutionTracker] {name} in flow {flow_id} (batch {record.batch_number}): "
            f"{len(record.input_record_ids)} in -> {len(record.output_record_ids)} out"
        )
        return record

    # -- read paths --------------------------------------------------------
    async def get_latest(self, controller_name: str) -> Optional[FlowExecutionRecord]:
        async def read():
            return await self.kv.get(f"controller:{controller_name}:latest")

        raw = await self._guard("get_latest", read)
        return FlowExecutionRecord.model_validate_json(raw) if raw else None

    async def get_controller_flow(self, controller_name: str, flow_id: str) -> Optional[ControllerFlowExecution]:
        base = self._controller_flow_key(controller_name, flow_id)

        async def read():
            summary_raw = await self.kv.get(f"{base}:summary")
            if not summary_raw:
                return None
            batches_raw = await self.kv.lrange(f"{base}:batches", 0, -1)
            return summary_raw, batches_raw

        found = await self._guard("get_controller_flow", read)
        if found is None:
            return None
        summary_raw, batches_raw = found
        # stored newest first; callers get chronological order
        batches = [FlowExecutionRecord.model_validate_json(b) for b in reversed(batches_raw)]
        summary = FlowSummary.model_validate_json(summary_raw)
        return ControllerFlowExecution(**summary.model_dump(), batches=batches)

    async def get_controller_history(self, controller_name: str, limit: int = 10) -> List[ControllerFlowExecution]:
        async def read():
            return await self.kv.lrange(f"controller:{controller_name}:flows", 0, limit - 1)

        flow_ids = await self._guard("get_controller_history", read) if limit > 0 else []
        history = []
        for flow_id in flow_ids:
            execution = await self.get_controller_flow(controller_name, flow_id)
            if execution is not None:
                history.append(execution)
        return history

    async def get_available_controllers(self) -> List[str]:
        if len(self.registry) > 0:
            return self.registry.names()

        async def scan():
            return await self.kv.keys("controller:")

        names = set()
        for key in await self._guard("get_available_controllers", scan):
            match = _FLOWS_KEY.match(key)
            if match and ":flow:" not in key:
                names.add(match.group(1))
        return sorted(names)

    async def get_flow_trace(self, flow_id: str) -> Optional[Dict[str, object]]:
        async def read():
            raw = await self.kv.get(f"flow:{flow_id}")
            controllers = await self.kv.smembers(f"flow:{flow_id}:controllers")
            return raw, controllers

        raw, controllers = await self._guard("get_flow_trace", read)
        if raw is None and not controllers:
            return None

        flow = FlowData.model_validate_json(raw) if raw else FlowData(flow_id=flow_id, start_time=0)
        flow.controllers = controllers
        controller_data = {}
        for name in controllers:
            execution = await self.get_controller_flow(name, flow_id)
            if execution is not None:
                controller_data[name] = execution.model_dump(exclude={"batches"})
        return {**flow.model_dump(), "controller_data": controller_data}

    async def get_all_flows(self, limit: int = 50) -> List[FlowData]:
        """Started flows, newest first."""
        async def read():
            flows = []
            for key in await self.kv.keys("flow:"):
                if ":" in key[len("flow:"):]:
                    continue
                raw = await self.kv.get(key)
                if raw:
                    flows.append(FlowData.model_validate_json(raw))
            return flows

        flows = await self._guard("get_all_flows", read)
        flows.sort(key=lambda f: f.start_time, reverse=True)
        return flows[:limit]

    async def clear_all(self) -> int:
        async def wipe():
            keys = await self.kv.keys("controller:") + await self.kv.keys("flow:")
            if keys:
                await self.kv.delete(*keys)
            return len(keys)

        deleted = await self._guard("clear_all", wipe)
        logger.info(f"[ExecutionTracker] cleared {deleted} tracking keys")
        return deleted
