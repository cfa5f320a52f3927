"""
Run Store
=========
Single source of truth for PipelineRun records and their stage histories.

Concurrency:
    - One asyncio.Lock per run: at most one stage transition in flight
      per run, unrelated runs proceed in parallel.
    - Reads return deep copies; callers never hold a reference into the store.
    - No lock is held while a stage executes; the engine only enters the
      store to append a finished StageResult or change state.

State transitions:
    Pending  → Running | Failed (cancelled while queued)
    Running  → Succeeded | Failed
    Failed   → RolledBack (only with a successful rollback record)

    Any other transition out of a terminal state raises ConsistencyError
    (e.g. a delayed retry completing after the run was already failed).
    finished_at is set exactly once, on the first terminal transition.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from app.core.errors import ConsistencyError, RunNotFoundError
from app.models.pipeline_run import (
    ErrorKind,
    PipelineRun,
    RollbackRecord,
    RunState,
    StageOutcome,
    StageResult,
    utcnow,
)
from app.models.stage import StageKind
from app.services.run_record_writer import RunRecordWriter

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    RunState.PENDING: {RunState.RUNNING, RunState.FAILED},
    RunState.RUNNING: {RunState.SUCCEEDED, RunState.FAILED},
    RunState.FAILED: {RunState.ROLLED_BACK},
    RunState.SUCCEEDED: set(),
    RunState.ROLLED_BACK: set(),
}


class RunStore:
    """In-memory run store with per-run serialization and optional JSON persistence."""

    def __init__(self, writer: Optional[RunRecordWriter] = None) -> None:
        self._runs: Dict[str, PipelineRun] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._by_commit: Dict[str, List[str]] = {}
        self._writer = writer

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------
    def load(self) -> int:
        """Reload persisted records. Returns the number of runs loaded."""
        if self._writer is None:
            return 0
        for run in self._writer.load_all():
            self._index(run)
        return len(self._runs)

    async def _persist(self, run: PipelineRun) -> None:
        if self._writer is not None:
            await asyncio.to_thread(self._writer.write_run, run.model_copy(deep=True))

    def _index(self, run: PipelineRun) -> None:
        self._runs[run.id] = run
        self._locks.setdefault(run.id, asyncio.Lock())
        ids = self._by_commit.setdefault(run.commit_ref, [])
        if run.id not in ids:
            ids.append(run.id)

    def _require(self, run_id: str) -> PipelineRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    async def create(self, run: PipelineRun) -> str:
        if run.id in self._runs:
            raise ConsistencyError(f"Run {run.id} already exists")
        if run.state is not RunState.PENDING or run.stages:
            raise ConsistencyError(f"Run {run.id} must be created Pending with no stages")
        stored = run.model_copy(deep=True)
        self._index(stored)
        await self._persist(stored)
        logger.info("[run:%s] Created for commit %s (target=%s)", run.id, run.commit_ref, run.target)
        return run.id

    async def append_stage(self, run_id: str, result: StageResult) -> PipelineRun:
        async with self._locks.setdefault(run_id, asyncio.Lock()):
            run = self._require(run_id)
            if run.state is not RunState.RUNNING:
                raise ConsistencyError(
                    f"Cannot append stage '{result.name.value}' to run {run_id} in state {run.state.value}"
                )
            run.stages.append(result.model_copy(deep=True))
            await self._persist(run)
            return run.model_copy(deep=True)

    async def get(self, run_id: str) -> PipelineRun:
        return self._require(run_id).model_copy(deep=True)

    async def set_state(
        self,
        run_id: str,
        state: RunState,
        *,
        failed_stage: Optional[StageKind] = None,
        error_kind: Optional[ErrorKind] = None,
        reason: str = "",
        expected: Optional[RunState] = None,
    ) -> PipelineRun:
        """
        Transition a run. ``expected`` makes the transition conditional on
        the current state (compare-and-set), e.g. cancelling only while Pending.
        """
        async with self._locks.setdefault(run_id, asyncio.Lock()):
            run = self._require(run_id)
            current = run.state
            if expected is not None and current is not expected:
                raise ConsistencyError(
                    f"Run {run_id} is {current.value}, expected {expected.value}"
                )
            if state not in _ALLOWED_TRANSITIONS[current]:
                if current.is_terminal:
                    raise ConsistencyError(
                        f"Run {run_id} is already terminal ({current.value}); refusing {state.value}"
                    )
                raise ConsistencyError(
                    f"Invalid transition for run {run_id}: {current.value} -> {state.value}"
                )
            if state is RunState.ROLLED_BACK and (
                run.rollback is None or run.rollback.outcome is not StageOutcome.SUCCESS
            ):
                raise ConsistencyError(f"Run {run_id} has no successful rollback record")

            run.state = state
            now = utcnow()
            if state is RunState.RUNNING:
                run.started_at = now
            if state.is_terminal and run.finished_at is None:
                run.finished_at = now
            if failed_stage is not None:
                run.failed_stage = failed_stage
            if error_kind is not None:
                run.error_kind = error_kind
            if reason:
                run.failure_reason = reason
            await self._persist(run)
            logger.info("[run:%s] State %s -> %s", run_id, current.value, state.value)
            return run.model_copy(deep=True)

    async def record_rollback(self, run_id: str, record: RollbackRecord) -> PipelineRun:
        async with self._locks.setdefault(run_id, asyncio.Lock()):
            run = self._require(run_id)
            if run.state is not RunState.FAILED:
                raise ConsistencyError(f"Rollback recorded on run {run_id} in state {run.state.value}")
            if run.rollback is not None:
                raise ConsistencyError(f"Run {run_id} already has a rollback record")
            run.rollback = record.model_copy(deep=True)
            await self._persist(run)
            return run.model_copy(deep=True)

    async def record_images(self, run_id: str, images: Dict[str, str]) -> None:
        async with self._locks.setdefault(run_id, asyncio.Lock()):
            run = self._require(run_id)
            run.images.update(images)
            await self._persist(run)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def find_by_commit(self, commit_ref: str) -> List[PipelineRun]:
        return [self._runs[i].model_copy(deep=True) for i in self._by_commit.get(commit_ref, [])]

    async def list_runs(self, limit: int = 50, state: Optional[RunState] = None) -> List[PipelineRun]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
        if state is not None:
            runs = [r for r in runs if r.state is state]
        return [r.model_copy(deep=True) for r in runs[:limit]]

    def __len__(self) -> int:
        return len(self._runs)
