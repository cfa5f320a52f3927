"""
Error Taxonomy
==============
Every error the pipeline raises carries an ErrorKind so the engine can
apply the retry / gating / rollback rules without inspecting messages.

    AuthenticationError     — bad trigger signature, rejected before any run exists
    ValidationError         — malformed trigger payload, rejected before any run exists
    TransientExecutionError — executor timeout / unavailability, retried per policy
    PolicyFailure           — deterministic gate failure, never retried
        CheckoutError, BuildError, TestFailure, ScanThresholdBreach, UnhealthyTarget
    DeployError             — runtime rejected an apply, target unchanged, not retried
    ConsistencyError        — Run Store refused a terminal-state overwrite
    RunNotFoundError        — unknown run id

Stage-level errors are captured into StageResult by the Stage Executor and
never cross the run boundary as raw exceptions.
"""
from typing import Any, Dict, Optional

from app.models.pipeline_run import ErrorKind


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.EXECUTION
    retryable: bool = False

    def __init__(self, message: str = "", detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail or {}


class AuthenticationError(PipelineError):
    kind = ErrorKind.AUTHENTICATION


class ValidationError(PipelineError):
    kind = ErrorKind.VALIDATION


class TransientExecutionError(PipelineError):
    kind = ErrorKind.TRANSIENT
    retryable = True


class PolicyFailure(PipelineError):
    kind = ErrorKind.POLICY


class CheckoutError(PolicyFailure):
    pass


class BuildError(PolicyFailure):
    pass


class TestFailure(PolicyFailure):
    __test__ = False


class ScanThresholdBreach(PolicyFailure):
    pass


class UnhealthyTarget(PolicyFailure):
    pass


class DeployError(PipelineError):
    kind = ErrorKind.DEPLOY


class ConsistencyError(PipelineError):
    kind = ErrorKind.CONSISTENCY


class RunNotFoundError(KeyError):
    def __init__(self, run_id: str) -> None:
        super().__init__(run_id)
        self.run_id = run_id

    def __str__(self) -> str:
        return f"Run not found: {self.run_id}"
