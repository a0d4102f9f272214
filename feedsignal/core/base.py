import asyncio
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from .judgment import JudgmentService
from .logging import PipelineObserver
from .models import EventKind, ExternalCallSummary, FlowExecutionRecord, PipelineEvent
from ..storage.similarity import SimilarityStore
from ..tracking.tracker import ControllerRegistry, ExecutionTracker, NO_FLOW, generate_controller_id


@dataclass
class StageResources:
    """Shared collaborators handed to every stage by the factory."""
    judge: Optional[JudgmentService] = None
    embedder: Any = None
    similarity: Optional[SimilarityStore] = None
    tracker: Optional[ExecutionTracker] = None
    registry: Optional[ControllerRegistry] = None


class PipelineStage(ABC):
    """
    A periodic batch processor. The orchestrator hands run() every event that
    accumulated in the stage's queue for one flow; subclasses only implement
    execute() for a single record.
    """
    emits: EventKind

    def __init__(self, stage_config: Dict[str, Any], resources: StageResources):
        self.config = stage_config
        self.stage_name = self.config.get("name", self.__class__.__name__)
        self.debug = self.config.get("debug", False)
        self.process_interval = float(self.config.get("process_interval", 5.0))

        self.resources = resources
        self.controller_id = generate_controller_id()
        if resources.registry is not None:
            resources.registry.register(self.stage_name)

        # Cumulative counters for the life of the stage
        self.counters: Counter = Counter()
        self.execution_log: List[Dict[str, Any]] = []

        self._batch_counters: Counter = Counter()
        self._batch_calls: List[ExternalCallSummary] = []
        self._batch_warnings: List[str] = []
        self._lock = asyncio.Lock()

        # This will be injected by the Orchestrator
        self.observer: Optional[PipelineObserver] = None

    @property
    def judge(self) -> JudgmentService:
        if self.resources.judge is None:
            raise ValueError(f"Stage '{self.stage_name}' needs a judgment service")
        return self.resources.judge

    def count(self, name: str, n: int = 1) -> None:
        self.counters[name] += n
        self._batch_counters[name] += n

    def record_call(self, summary: ExternalCallSummary) -> None:
        self._batch_calls.append(summary)

    def warn(self, message: str) -> None:
        logger.warning(f"[{self.stage_name}] {message}")
        self._batch_warnings.append(message)

    def log_artifact(self, label: str, data: Any):
        """
        Call this inside your execute() method to log intermediate data.
        """
        if self.observer:
            self.observer.on_artifact(label, data)

    async def run(self, events: List[PipelineEvent]) -> List[PipelineEvent]:
        """
        The standard batch wrapper: ordering, per-record failure isolation,
        timing, observer events and execution tracking.
        DO NOT OVERRIDE. Override execute() instead.
        """
        if not events:
            return []

        async with self._lock:
            flow_id = events[0].flow_id
            ordered = sorted(events, key=lambda e: e.created_at)

            self._batch_counters = Counter()
            self._batch_calls = []
            self._batch_warnings = []

            start_time = time.time()
            if self.observer:
                self.observer.on_stage_start(self.stage_name, self.config, len(ordered), flow_id or NO_FLOW)

            outputs: List[PipelineEvent] = []
            for event in ordered:
                try:
                    payload = await self.execute(event.payload)
                except Exception as e:
                    logger.exception(f"[{self.stage_name}] record {event.record_id} failed: {e}")
                    self.count("errors")
                    self._batch_warnings.append(f"{event.record_id}: {type(e).__name__}: {e}")
                    continue
                if payload is not None:
                    outputs.append(PipelineEvent(kind=self.emits, payload=payload, flow_id=flow_id))

            duration = time.time() - start_time
            tokens = sum(c.tokens or 0 for c in self._batch_calls)

            record = FlowExecutionRecord(
                controller_id=self.controller_id,
                controller_name=self.stage_name,
                flow_id=flow_id or NO_FLOW,
                input_record_ids=[e.record_id for e in ordered],
                output_record_ids=[e.record_id for e in outputs],
                external_calls=list(self._batch_calls),
                internal_state=dict(self._batch_counters),
                warnings=list(self._batch_warnings),
                processing_time_ms=int(duration * 1000),
            )

            if self.resources.tracker is not None:
                try:
                    record = await self.resources.tracker.track_controller(self.controller_id, flow_id, record)
                except Exception as e:
                    logger.error(f"[{self.stage_name}] execution tracking failed: {e}")

            if self.observer:
                self.observer.on_stage_end(self.stage_name, duration, tokens, record.model_dump_json(), flow_id or NO_FLOW)

            self.execution_log.append({
                "stage": self.stage_name,
                "flow_id": flow_id or NO_FLOW,
                "duration": duration,
                "tokens": tokens,
                "inputs": len(ordered),
                "outputs": len(outputs),
            })

            logger.info(f"[{self.stage_name}] flow {flow_id or NO_FLOW}: {len(ordered)} in -> {len(outputs)} out ({duration:.2f}s)")
            return outputs

    @abstractmethod
    async def execute(self, record: Any) -> Optional[Any]:
        """Process one record; return the payload to emit downstream, or None to drop it."""
        pass
