import asyncio
import io
import time
from collections import OrderedDict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

# Rich is still used for the pretty terminal table
from rich import box
from rich.console import Console
from rich.table import Table

from loguru import logger

from .base import PipelineStage, StageResources
from .events import EventBus
from .factory import StageFactory
from .logging import PipelineLogger, PipelineObserver
from .models import EventKind, PipelineEvent, SourceRecord
from ..tracking.tracker import generate_flow_id


class PipelineOrchestrator:
    """
    Chains the configured stages. Every stage owns an input queue and a timer
    loop; on each tick it drains its queue, splits the events by flow id and
    runs one batch per flow, then forwards the output to the next stage's
    queue and to the event bus.
    """

    def __init__(
        self,
        config: Dict,
        resources: StageResources,
        event_bus: Optional[EventBus] = None,
        observer: Optional[PipelineObserver] = None,
    ):
        self.config = config
        self.name = config.get("name", "feedsignal")
        self.run_id = config.get("run_id") or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.debug = config.get("debug", False)

        # 1. Initialize the Logger Service
        self.logger = observer or PipelineLogger(self.run_id, debug=self.debug, log_level=config.get("log_level", "INFO"))
        self.bus = event_bus or EventBus()
        self.resources = resources
        self.tracker = resources.tracker
        if resources.judge is not None:
            resources.judge.llm.observer = self.logger

        # 2. Build Stages
        self.stages: List[PipelineStage] = []
        for stage_def in config.get("stages", []):
            settings = dict(stage_def.get("settings", {}))
            settings.setdefault("debug", self.debug)
            stage = StageFactory.create({**stage_def, "settings": settings}, resources)

            # INJECT LOGGER
            stage.observer = self.logger
            self.stages.append(stage)

        if not self.stages:
            raise ValueError("Pipeline config defines no stages.")

        self.queues: List[asyncio.Queue] = [asyncio.Queue() for _ in self.stages]
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._active_ticks = 0
        self._started_at: Optional[float] = None

        # flows opened by inject_flow: events still inside the pipeline, final outputs
        self._flow_pending: Dict[str, int] = {}
        self._flow_outputs: Dict[str, List[str]] = {}

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------
    async def pump(self, record: SourceRecord, flow_id: Optional[str] = None) -> None:
        event = PipelineEvent(kind=EventKind.RECORD_RECEIVED, payload=record, flow_id=flow_id)
        if flow_id in self._flow_pending:
            self._flow_pending[flow_id] += 1
        await self.bus.publish(event)
        self.queues[0].put_nowait(event)

    async def inject_flow(self, records: Iterable[SourceRecord], flow_id: Optional[str] = None) -> str:
        records = list(records)
        flow_id = flow_id or generate_flow_id()
        self._flow_pending.setdefault(flow_id, 0)
        self._flow_outputs.setdefault(flow_id, [])
        if self.tracker is not None:
            try:
                await self.tracker.track_flow_start(flow_id, [r.record_id for r in records])
            except Exception as e:
                logger.error(f"[Orchestrator] could not record start of flow {flow_id}: {e}")
        for record in records:
            await self.pump(record, flow_id)
        if not records:
            await self._close_flow(flow_id)
        logger.info(f"[Orchestrator] injected {len(records)} records as flow {flow_id}")
        return flow_id

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------
    def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._started_at = time.time()
        self.logger.on_run_start(self.name, self.run_id)
        for index, stage in enumerate(self.stages):
            self._tasks.append(asyncio.create_task(self._stage_loop(index), name=f"stage:{stage.stage_name}"))

    async def _stage_loop(self, index: int) -> None:
        stage = self.stages[index]
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=stage.process_interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self._tick(index)
            except Exception as e:
                logger.exception(f"[Orchestrator] tick of {stage.stage_name} failed: {e}")

    async def _tick(self, index: int) -> int:
        queue = self.queues[index]
        if queue.empty():
            return 0

        events: List[PipelineEvent] = []
        while not queue.empty():
            events.append(queue.get_nowait())

        groups: "OrderedDict[Optional[str], List[PipelineEvent]]" = OrderedDict()
        for event in events:
            groups.setdefault(event.flow_id, []).append(event)

        stage = self.stages[index]
        is_last = index == len(self.stages) - 1
        self._active_ticks += 1
        try:
            for flow_id, group in groups.items():
                outputs = await stage.run(group)
                for out in outputs:
                    await self.bus.publish(out)
                    if not is_last:
                        self.queues[index + 1].put_nowait(out)
                await self._account(flow_id, consumed=len(group), outputs=outputs, is_last=is_last)
        finally:
            self._active_ticks -= 1
        return len(events)

    async def _account(self, flow_id: Optional[str], consumed: int, outputs: List[PipelineEvent], is_last: bool) -> None:
        if flow_id not in self._flow_pending:
            return
        if is_last:
            self._flow_outputs[flow_id].extend(e.record_id for e in outputs)
            self._flow_pending[flow_id] -= consumed
        else:
            self._flow_pending[flow_id] += len(outputs) - consumed
        if self._flow_pending[flow_id] <= 0:
            await self._close_flow(flow_id)

    async def _close_flow(self, flow_id: str) -> None:
        self._flow_pending.pop(flow_id, None)
        outputs = self._flow_outputs.pop(flow_id, [])
        if self.tracker is not None:
            try:
                await self.tracker.track_flow_end(flow_id, outputs)
            except Exception as e:
                logger.error(f"[Orchestrator] could not record end of flow {flow_id}: {e}")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Runs every stage until all queues are empty and no batch is in progress."""
        async def _drain():
            while any(not q.empty() for q in self.queues) or self._active_ticks:
                progressed = 0
                for index in range(len(self.stages)):
                    progressed += await self._tick(index)
                if not progressed:
                    await asyncio.sleep(0.01)

        await asyncio.wait_for(_drain(), timeout=timeout)

    async def stop(self) -> None:
        """Stops the timers; a batch already running finishes first."""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        total_duration = time.time() - self._started_at if self._started_at else 0.0
        self.logger.on_run_end(total_duration)
        self._print_and_log_summary(total_duration)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------
    def queue_sizes(self) -> Dict[str, int]:
        return {stage.stage_name: q.qsize() for stage, q in zip(self.stages, self.queues)}

    def counters(self) -> Dict[str, Dict[str, int]]:
        return {stage.stage_name: dict(stage.counters) for stage in self.stages}

    def open_flows(self) -> Dict[str, int]:
        return dict(self._flow_pending)

    def _print_and_log_summary(self, total_duration: float):
        """
        Generates the Rich table, prints it to stdout, and logs it to file.
        """
        table = Table(
            title=f"EXECUTION SUMMARY: {self.name}",
            title_justify="left",
            box=box.ROUNDED,
            show_header=True
        )
        table.add_column("Stage", justify="left", no_wrap=True)
        table.add_column("Batches", justify="right")
        table.add_column("In", justify="right")
        table.add_column("Out", justify="right")
        table.add_column("Counters", justify="left")
        table.add_column("Duration", justify="right")
        table.add_column("Tokens", justify="right")

        total_tokens = 0
        for stage in self.stages:
            log = stage.execution_log
            tokens = sum(e["tokens"] for e in log)
            total_tokens += tokens
            counters = ", ".join(f"{k}={v}" for k, v in sorted(stage.counters.items())) or "-"
            table.add_row(
                stage.stage_name,
                str(len(log)),
                str(sum(e["inputs"] for e in log)),
                str(sum(e["outputs"] for e in log)),
                counters,
                f"{sum(e['duration'] for e in log):.4f}s",
                str(tokens) if tokens > 0 else "-",
            )

        table.add_section()
        table.add_row("TOTAL", "", "", "", "", f"{total_duration:.4f}s", str(total_tokens))

        # 1. Print to Terminal
        Console().print(table)

        # 2. Save to Log File (via Logger Service)
        string_buffer = io.StringIO()
        file_console = Console(file=string_buffer, no_color=True, width=150)
        file_console.print(table)
        self.logger.log_summary(string_buffer.getvalue())

