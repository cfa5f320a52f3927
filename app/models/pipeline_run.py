"""
Pipeline Run Model
==================
Pydantic models tracking one pipeline execution from trigger to terminal state.

PipelineRun:
    id              — assigned at creation, immutable
    commit_ref      — source revision that triggered the run
    stages          — ordered StageResult history, append-only
    state           — Pending / Running / Succeeded / Failed / RolledBack
    created_at      — when the request was accepted (run queued)
    started_at      — when the run left Pending
    finished_at     — set exactly once, on the first terminal transition
    failed_stage    — stage at which the run stopped (None on success)
    error_kind      — classified error of the stopping stage
    failure_reason  — short human-readable reason (e.g. "Cancelled")
    images          — canonical ImageRefs produced by this run
    rollback        — outcome of the single rollback attempt, if any

StageResult:
    name / outcome / attempt (1-based) / detail (opaque diagnostics)
    plus error_kind, transient flag and timing.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.core.constants import DEFAULT_TARGET
from app.models.stage import StageKind


class RunState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED, RunState.ROLLED_BACK)


class StageOutcome(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    SKIPPED = "Skipped"


class ErrorKind(str, Enum):
    AUTHENTICATION = "AuthenticationError"
    VALIDATION = "ValidationError"
    TRANSIENT = "TransientExecutionError"
    POLICY = "PolicyFailure"
    DEPLOY = "DeployError"
    EXECUTION = "ExecutionError"
    CONSISTENCY = "ConsistencyError"
    CANCELLED = "Cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageResult(BaseModel):
    name: StageKind
    outcome: StageOutcome
    attempt: int = 1
    detail: Dict[str, Any] = {}
    error_kind: Optional[ErrorKind] = None
    transient: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0


class RollbackRecord(BaseModel):
    outcome: StageOutcome
    attempt: int = 1
    images: Dict[str, str] = {}
    detail: Dict[str, Any] = {}
    alarm: bool = False                 # operator intervention required
    attempted_at: datetime = Field(default_factory=utcnow)


class PipelineRun(BaseModel):
    id: str
    commit_ref: str
    branch: str = ""
    delivery_id: str = ""
    repository_url: str = ""
    target: str = DEFAULT_TARGET
    stages: List[StageResult] = []
    state: RunState = RunState.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failed_stage: Optional[StageKind] = None
    error_kind: Optional[ErrorKind] = None
    failure_reason: str = ""
    images: Dict[str, str] = {}
    rollback: Optional[RollbackRecord] = None

    def final_outcomes(self) -> Dict[StageKind, StageOutcome]:
        """Outcome of the last recorded attempt of each stage."""
        outcomes: Dict[StageKind, StageOutcome] = {}
        for result in self.stages:
            outcomes[result.name] = result.outcome
        return outcomes

    def attempts_of(self, kind: StageKind) -> List[StageResult]:
        return [r for r in self.stages if r.name == kind]
