"""
Stage Executor
==============
Runs one stage attempt under a hard wall-clock timeout and reports a
StageResult. Never raises for a stage failure.

Classification:
    timeout                     → Failure, TransientExecutionError (retryable)
    TransientExecutionError     → Failure, transient (retryable)
    PolicyFailure / DeployError → Failure, not retryable
    any other exception         → Failure, ExecutionError, not retryable

On timeout the operation's task is cancelled; operations clean up their
attempt-qualified artifacts on cancellation. Underlying work the executor
does not own outright (e.g. a docker call already in a worker thread) is
only cancelled best-effort.

Retry policy (run_with_retry):
    transient failures are retried up to RetryPolicy.max_retries additional
    attempts with exponential backoff; stages declared non-retryable run once.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from app.core.config import (
    MAX_TRANSIENT_RETRIES,
    RETRY_BACKOFF_CAP_SECONDS,
    RETRY_BACKOFF_SECONDS,
)
from app.core.errors import PipelineError
from app.executor.stage_operations import StageOperations
from app.models.pipeline_run import ErrorKind, StageOutcome, StageResult, utcnow
from app.models.run_context import RunContext
from app.models.stage import StageSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = MAX_TRANSIENT_RETRIES
    backoff_seconds: float = RETRY_BACKOFF_SECONDS
    backoff_cap_seconds: float = RETRY_BACKOFF_CAP_SECONDS

    def backoff_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based): base, 2*base, 4*base ... capped."""
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_cap_seconds)


class StageExecutor:
    """Executes stage operations with timeout, classification and retry."""

    def __init__(
        self,
        operations: StageOperations,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.operations = operations
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def run(
        self,
        spec: StageSpec,
        context: RunContext,
        timeout: Optional[float] = None,
        attempt: int = 1,
    ) -> StageResult:
        operation = self.operations.for_kind(spec.kind)
        timeout = spec.timeout_seconds if timeout is None else timeout
        started_at = utcnow()
        t0 = time.monotonic()

        outcome = StageOutcome.FAILURE
        error_kind: Optional[ErrorKind] = None
        transient = False
        try:
            output = await asyncio.wait_for(operation(context, attempt), timeout=timeout)
            outcome = StageOutcome.SUCCESS
            detail = output.model_dump(mode="json")
        except asyncio.TimeoutError:
            error_kind = ErrorKind.TRANSIENT
            transient = True
            detail = {"error": f"Stage timed out after {timeout:.0f}s"}
        except PipelineError as e:
            error_kind = e.kind
            transient = e.retryable
            detail = {**e.detail, "error": e.message}
        except Exception as e:
            # Unclassified collaborator failure: recorded, never propagated.
            logger.exception("[run:%s] Unexpected error in stage %s", context.run_id, spec.kind.value)
            error_kind = ErrorKind.EXECUTION
            detail = {"error": f"{type(e).__name__}: {e}"}

        duration = round(time.monotonic() - t0, 3)
        log = logger.info if outcome is StageOutcome.SUCCESS else logger.warning
        log(
            "[run:%s] Stage %s attempt %d: %s%s (%.2fs)",
            context.run_id, spec.kind.value, attempt, outcome.value,
            f" [{error_kind.value}]" if error_kind else "", duration,
        )
        return StageResult(
            name=spec.kind,
            outcome=outcome,
            attempt=attempt,
            detail=detail,
            error_kind=error_kind,
            transient=transient,
            started_at=started_at,
            finished_at=utcnow(),
            duration_seconds=duration,
        )

    async def run_with_retry(
        self,
        spec: StageSpec,
        context: RunContext,
        on_attempt: Optional[Callable[[StageResult], Awaitable[None]]] = None,
    ) -> List[StageResult]:
        """
        Run a stage until it succeeds, fails non-transiently, or exhausts
        its retries. Returns every attempt in order.
        """
        max_attempts = 1 + (self.retry_policy.max_retries if spec.retryable else 0)
        attempts: List[StageResult] = []
        for attempt in range(1, max_attempts + 1):
            result = await self.run(spec, context, attempt=attempt)
            attempts.append(result)
            if on_attempt is not None:
                await on_attempt(result)
            if result.outcome is StageOutcome.SUCCESS or not result.transient:
                break
            if attempt < max_attempts:
                delay = self.retry_policy.backoff_for(attempt)
                logger.info(
                    "[run:%s] Retrying %s in %.1fs (attempt %d/%d)",
                    context.run_id, spec.kind.value, delay, attempt + 1, max_attempts,
                )
                await self._sleep(delay)
        return attempts
