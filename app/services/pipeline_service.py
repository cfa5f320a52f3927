"""
Pipeline Service
================
Wires the Trigger Receiver, Run Store, Pipeline Engine and Run Scheduler
together and exposes the operations used by the HTTP layer.

FLOW:
    1. handle_push(raw event) → TriggerReceiver.receive
    2. Accepted → PipelineEngine.create_run (Pending) → bind delivery-id
    3. RunScheduler.submit → per-target FIFO → PipelineEngine.execute

Status mapping for inbound deliveries:
    Accepted      → 200 {"status": "queued", "run_id": ...}
    Unsupported   → 200 {"status": "ignored"}
    Duplicate     → 202 {"status": "duplicate", "run_id": <original>}
    Unauthorized  → 401
    Invalid       → 422
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.agents.health_gate import HealthGate
from app.agents.pipeline_engine import PipelineEngine
from app.agents.run_scheduler import RunScheduler
from app.core.config import RUN_STORE_DIR
from app.executor.docker_collaborators import (
    DockerBuilder,
    DockerRuntime,
    DockerTestRunner,
    GitSource,
    HttpHealthProbe,
    TrivyScanner,
)
from app.executor.stage_executor import StageExecutor
from app.executor.stage_operations import StageOperations
from app.models.pipeline_request import RawEvent, RejectedEvent, RejectionReason
from app.models.pipeline_run import ErrorKind, PipelineRun, RunState
from app.receiver.trigger_receiver import TriggerReceiver
from app.services.notifier import Notifier
from app.services.run_record_writer import RunRecordWriter
from app.services.target_registry import TargetRegistry
from app.state.run_store import RunStore

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "Interrupted by orchestrator restart"

_REJECTION_STATUS = {
    RejectionReason.UNAUTHORIZED: 401,
    RejectionReason.INVALID: 422,
    RejectionReason.UNSUPPORTED: 200,
    RejectionReason.DUPLICATE: 202,
}
_REJECTION_LABEL = {
    RejectionReason.UNAUTHORIZED: "unauthorized",
    RejectionReason.INVALID: "invalid",
    RejectionReason.UNSUPPORTED: "ignored",
    RejectionReason.DUPLICATE: "duplicate",
}


@dataclass
class SubmissionResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


class PipelineService:
    def __init__(
        self,
        receiver: TriggerReceiver,
        store: RunStore,
        engine: PipelineEngine,
        scheduler: RunScheduler,
        targets: TargetRegistry,
    ) -> None:
        self.receiver = receiver
        self.store = store
        self.engine = engine
        self.scheduler = scheduler
        self.targets = targets

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Reload persisted runs; runs left unfinished by a previous process are failed."""
        loaded = self.store.load()
        if not loaded:
            return
        for run in await self.store.list_runs(limit=loaded):
            if run.state.is_terminal:
                continue
            failed = await self.store.set_state(
                run.id, RunState.FAILED, error_kind=ErrorKind.EXECUTION, reason=INTERRUPTED_REASON,
            )
            await self.engine.notifier.notify(failed)
            logger.warning("[run:%s] %s", run.id, INTERRUPTED_REASON)

    async def stop(self) -> None:
        await self.scheduler.shutdown()

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------
    async def handle_push(self, event: RawEvent) -> SubmissionResult:
        result = self.receiver.receive(event)
        if isinstance(result, RejectedEvent):
            body: Dict[str, Any] = {"status": _REJECTION_LABEL[result.reason], "detail": result.message}
            if result.run_id:
                body["run_id"] = result.run_id
            return SubmissionResult(_REJECTION_STATUS[result.reason], body)

        try:
            run = await self.engine.create_run(result)
        except Exception:
            # No run exists for this delivery; a redelivery must be able to retry.
            self.receiver.release(result.delivery_id)
            raise
        self.receiver.bind_run(result.delivery_id, run.id)
        self.scheduler.submit(run)
        return SubmissionResult(200, {
            "status": "queued",
            "run_id": run.id,
            "commit_ref": run.commit_ref,
            "target": run.target,
        })

    # ------------------------------------------------------------------
    # Inspection / control
    # ------------------------------------------------------------------
    async def get_run(self, run_id: str) -> PipelineRun:
        return await self.store.get(run_id)

    async def list_runs(
        self,
        commit_ref: Optional[str] = None,
        state: Optional[RunState] = None,
        limit: int = 50,
    ) -> List[PipelineRun]:
        if commit_ref:
            runs = await self.store.find_by_commit(commit_ref)
            if state is not None:
                runs = [r for r in runs if r.state is state]
            return runs[:limit]
        return await self.store.list_runs(limit=limit, state=state)

    async def cancel(self, run_id: str) -> PipelineRun:
        return await self.engine.request_cancel(run_id)

    def target_views(self) -> List[Dict[str, Any]]:
        views: List[Dict[str, Any]] = []
        for view in self.targets.views():
            entry: Dict[str, Any] = view.model_dump(mode="json")
            entry["active_run"] = self.scheduler.active(view.name)
            entry["queued_runs"] = self.scheduler.queued(view.name)
            views.append(entry)
        return views


def build_pipeline_service() -> PipelineService:
    """Production wiring: docker/git/trivy collaborators and configured targets."""
    runtime = DockerRuntime()
    operations = StageOperations(
        source=GitSource(),
        builder=DockerBuilder(),
        tester=DockerTestRunner(),
        scanner=TrivyScanner(),
        runtime=runtime,
        health_gate=HealthGate(HttpHealthProbe(runtime=runtime)),
    )
    store = RunStore(RunRecordWriter(RUN_STORE_DIR) if RUN_STORE_DIR else None)
    targets = TargetRegistry.from_file()
    engine = PipelineEngine(store, StageExecutor(operations), targets, Notifier())
    return PipelineService(
        receiver=TriggerReceiver(),
        store=store,
        engine=engine,
        scheduler=RunScheduler(engine),
        targets=targets,
    )
