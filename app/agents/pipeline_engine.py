"""
Pipeline Engine
===============
Owns the stage sequence and drives one PipelineRun from Pending to a
terminal state.

State machine:
    Pending → Running → Succeeded
                      → Failed → [RolledBack]

    RolledBack is reachable only from Failed, and only after this run's
    deploy stage had succeeded and verify then failed.

Stage sequence (PipelineDefinition groups, each a hard gate):
    checkout → (build-backend ‖ build-frontend) → test → scan → deploy → verify

Gating rule:
    A stage executes only if all of its declared predecessors ended in
    Success. Otherwise it and every later stage are recorded Skipped and
    the run short-circuits to Failed.

Retry policy:
    Delegated to StageExecutor.run_with_retry (transient only, bounded,
    exponential backoff). Every attempt is appended to the run history.

Rollback policy:
    verify failing after a successful deploy, or deploy itself failing or
    timing out once the runtime apply was issued → run transitions to
    Failed, the previous image set is re-applied ONCE. Success → RolledBack
    when the deploy itself had succeeded; after a failed deploy the run
    stays Failed with the successful restore recorded. Rollback failure →
    the run stays Failed with an alarm record; never retried.

Cancellation:
    Operator cancel or the whole-run wall-clock budget is honoured at the
    next stage boundary (Failed, reason "Cancelled"), unless a stage has
    already failed, in which case the run fails at that stage. Once deploy
    has started, cancellation waits for verify (and a possible rollback) so
    the target is never left serving unverified images.

Notifications:
    One RunNotification per terminal transition accepted by the Run Store.
"""
import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from app.core.config import DEPLOY_TIMEOUT, RUN_BUDGET_SECONDS
from app.core.errors import ConsistencyError
from app.executor.stage_executor import StageExecutor
from app.models.pipeline_request import PipelineRequest
from app.models.pipeline_run import (
    ErrorKind,
    PipelineRun,
    RollbackRecord,
    RunState,
    StageOutcome,
    StageResult,
)
from app.models.run_context import RunContext
from app.models.stage import PipelineDefinition, StageKind, StageSpec, default_pipeline
from app.services.notifier import Notifier
from app.services.target_registry import TargetRegistry
from app.state.run_store import RunStore

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Cancelled"


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


class PipelineEngine:
    """
    Advances PipelineRuns through the stage state machine.

    The engine holds no run state of its own: every run is an explicit
    PipelineRun record in the RunStore plus a RunContext passed through
    the stage operations by reference.
    """

    def __init__(
        self,
        store: RunStore,
        executor: StageExecutor,
        targets: TargetRegistry,
        notifier: Optional[Notifier] = None,
        definition: Optional[PipelineDefinition] = None,
        run_budget_seconds: float = RUN_BUDGET_SECONDS,
        rollback_timeout: float = DEPLOY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.executor = executor
        self.targets = targets
        self.notifier = notifier or Notifier()
        self.definition = definition or default_pipeline()
        self.run_budget_seconds = run_budget_seconds
        self.rollback_timeout = rollback_timeout
        self._clock = clock
        self._cancel_requests: Set[str] = set()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------
    async def create_run(self, request: PipelineRequest) -> PipelineRun:
        self.targets.get(request.target)
        run = PipelineRun(
            id=new_run_id(),
            commit_ref=request.commit_ref,
            branch=request.branch,
            delivery_id=request.delivery_id,
            repository_url=request.repository_url,
            target=request.target,
        )
        await self.store.create(run)
        return await self.store.get(run.id)

    async def request_cancel(self, run_id: str) -> PipelineRun:
        """
        Cancel a run. A queued (Pending) run fails immediately; a Running
        run stops at its next stage boundary.

        Raises ConsistencyError if the run is already terminal.
        """
        run = await self.store.get(run_id)
        if run.state.is_terminal:
            raise ConsistencyError(f"Run {run_id} already finished ({run.state.value})")

        if run.state is RunState.PENDING:
            try:
                run = await self._finish(
                    run_id, RunState.FAILED,
                    error_kind=ErrorKind.CANCELLED, reason=CANCELLED_REASON,
                    expected=RunState.PENDING,
                )
                logger.info("[run:%s] Cancelled while queued", run_id)
                return run
            except ConsistencyError:
                # Started between the read and the transition; fall through.
                pass

        self._cancel_requests.add(run_id)
        logger.info("[run:%s] Cancellation requested; stopping at next stage boundary", run_id)
        return await self.store.get(run_id)

    async def execute(self, run_id: str) -> PipelineRun:
        """Drive a Pending run to a terminal state. Never raises for stage failures."""
        run = await self.store.get(run_id)
        if run.state is not RunState.PENDING:
            logger.info("[run:%s] Not pending (%s), skipping", run_id, run.state.value)
            return run

        try:
            run = await self.store.set_state(run_id, RunState.RUNNING, expected=RunState.PENDING)
        except ConsistencyError as e:
            logger.error("[run:%s] Invariant violation on start: %s", run_id, e)
            return await self.store.get(run_id)

        deadline = self._clock() + self.run_budget_seconds
        logger.info("[run:%s] Started for %s on target %s", run_id, run.commit_ref[:12], run.target)

        try:
            ctx = RunContext(
                run_id=run.id,
                commit_ref=run.commit_ref,
                repository_url=run.repository_url,
                target=self.targets.get(run.target),
            )
            return await self._drive(run_id, ctx, deadline)
        except ConsistencyError as e:
            logger.error("[run:%s] Invariant violation: %s", run_id, e)
            return await self.store.get(run_id)
        except Exception as e:
            logger.exception("[run:%s] Engine error", run_id)
            return await self._fail_safely(run_id, f"Engine error: {type(e).__name__}: {e}")
        finally:
            self._cancel_requests.discard(run_id)

    # ------------------------------------------------------------------
    # Stage sequencing
    # ------------------------------------------------------------------
    async def _drive(self, run_id: str, ctx: RunContext, deadline: float) -> PipelineRun:
        groups = self.definition.groups
        outcomes: Dict[StageKind, StageOutcome] = {}
        failure: Optional[StageResult] = None

        for index, group in enumerate(groups):
            # A recorded stage failure outranks a cancel or budget expiry noticed after it.
            if not all(self._gate_open(spec, outcomes) for spec in group):
                remaining = [spec for later in groups[index:] for spec in later]
                await self._record_skipped(run_id, remaining, failure)
                return await self._finish_failed(run_id, failure)

            if not ctx.target_touched:
                reason = self._cancel_reason(run_id, deadline)
                if reason:
                    logger.warning("[run:%s] %s before %s", run_id, reason, group[0].kind.value)
                    return await self._finish(
                        run_id, RunState.FAILED,
                        failed_stage=group[0].kind, error_kind=ErrorKind.CANCELLED, reason=reason,
                    )

            for spec, attempts in await self._run_group(run_id, group, ctx):
                final = attempts[-1]
                outcomes[spec.kind] = final.outcome
                if final.outcome is not StageOutcome.SUCCESS and failure is None:
                    failure = final

            if ctx.images and any(spec.kind in (StageKind.BUILD_BACKEND, StageKind.BUILD_FRONTEND) for spec in group):
                await self.store.record_images(run_id, {k: v.reference for k, v in ctx.images.items()})

            if failure is not None and ctx.target_touched:
                remaining = [spec for later in groups[index + 1:] for spec in later]
                await self._record_skipped(run_id, remaining, failure)
                return await self._fail_and_rollback(run_id, ctx, failure)

        if failure is not None:
            return await self._finish_failed(run_id, failure)
        return await self._finish(run_id, RunState.SUCCEEDED)

    @staticmethod
    def _gate_open(spec: StageSpec, outcomes: Dict[StageKind, StageOutcome]) -> bool:
        return all(outcomes.get(p) is StageOutcome.SUCCESS for p in spec.predecessors)

    def _cancel_reason(self, run_id: str, deadline: float) -> str:
        if run_id in self._cancel_requests:
            return CANCELLED_REASON
        if self._clock() >= deadline:
            return f"{CANCELLED_REASON}: run budget of {self.run_budget_seconds:.0f}s exceeded"
        return ""

    async def _run_group(
        self, run_id: str, group: Sequence[StageSpec], ctx: RunContext
    ) -> List[Tuple[StageSpec, List[StageResult]]]:
        if len(group) == 1:
            spec = group[0]

            async def append(result: StageResult) -> None:
                await self.store.append_stage(run_id, result)

            attempts = await self.executor.run_with_retry(spec, ctx, on_attempt=append)
            return [(spec, attempts)]

        # Independent stages run concurrently; their histories are appended
        # afterwards in declared order so the run history stays ordered.
        results = await asyncio.gather(*(self.executor.run_with_retry(spec, ctx) for spec in group))
        for attempts in results:
            for result in attempts:
                await self.store.append_stage(run_id, result)
        return list(zip(group, results))

    async def _record_skipped(
        self, run_id: str, specs: Sequence[StageSpec], failure: Optional[StageResult]
    ) -> None:
        because = failure.name.value if failure else "a predecessor"
        for spec in specs:
            await self.store.append_stage(run_id, StageResult(
                name=spec.kind,
                outcome=StageOutcome.SKIPPED,
                detail={"reason": f"not run: {because} did not succeed"},
            ))

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------
    async def _finish(
        self,
        run_id: str,
        state: RunState,
        *,
        failed_stage: Optional[StageKind] = None,
        error_kind: Optional[ErrorKind] = None,
        reason: str = "",
        expected: Optional[RunState] = None,
    ) -> PipelineRun:
        run = await self.store.set_state(
            run_id, state,
            failed_stage=failed_stage, error_kind=error_kind, reason=reason, expected=expected,
        )
        if state.is_terminal:
            await self.notifier.notify(run)
        return run

    async def _finish_failed(self, run_id: str, failure: Optional[StageResult]) -> PipelineRun:
        if failure is None:
            return await self._finish(run_id, RunState.FAILED, error_kind=ErrorKind.EXECUTION,
                                      reason="Gate closed without a recorded failure")
        return await self._finish(
            run_id, RunState.FAILED,
            failed_stage=failure.name,
            error_kind=failure.error_kind,
            reason=str(failure.detail.get("error", "")),
        )

    async def _fail_safely(self, run_id: str, reason: str) -> PipelineRun:
        try:
            return await self._finish(run_id, RunState.FAILED, error_kind=ErrorKind.EXECUTION, reason=reason)
        except ConsistencyError as e:
            logger.error("[run:%s] Invariant violation while failing run: %s", run_id, e)
            return await self.store.get(run_id)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    async def _fail_and_rollback(self, run_id: str, ctx: RunContext, failure: StageResult) -> PipelineRun:
        await self._finish_failed(run_id, failure)
        deploy_succeeded = ctx.deployed
        record = await self._rollback(ctx)
        run = await self.store.record_rollback(run_id, record)
        if record.outcome is StageOutcome.SUCCESS:
            if deploy_succeeded:
                return await self._finish(run_id, RunState.ROLLED_BACK)
            logger.warning(
                "[run:%s] Deploy did not complete; %s restored to its previous images",
                run_id, ctx.target.name,
            )
            return run
        logger.critical(
            "[run:%s] ROLLBACK FAILED on target %s: %s. Operator intervention required; "
            "target left in last-known state.",
            run_id, ctx.target.name, record.detail.get("error", "unknown error"),
        )
        return run

    async def _rollback(self, ctx: RunContext) -> RollbackRecord:
        previous = ctx.previous_images
        images = {name: ref.reference for name, ref in previous.items()}
        if not previous:
            return RollbackRecord(
                outcome=StageOutcome.FAILURE,
                alarm=True,
                detail={"error": f"No previous image set recorded for target {ctx.target.name}"},
            )

        runtime = self.executor.operations.runtime
        logger.warning("[run:%s] Rolling back %s to %s", ctx.run_id, ctx.target.name, images)
        try:
            ack = await asyncio.wait_for(runtime.apply(ctx.target, previous), timeout=self.rollback_timeout)
        except asyncio.TimeoutError:
            return RollbackRecord(
                outcome=StageOutcome.FAILURE, images=images, alarm=True,
                detail={"error": f"Rollback apply timed out after {self.rollback_timeout:.0f}s"},
            )
        except Exception as e:
            return RollbackRecord(
                outcome=StageOutcome.FAILURE, images=images, alarm=True,
                detail={"error": f"{type(e).__name__}: {e}"},
            )

        ctx.target.swap(previous)
        ctx.deployed = False
        ctx.apply_issued = False
        return RollbackRecord(outcome=StageOutcome.SUCCESS, images=images, detail={"applied": ack.applied})
