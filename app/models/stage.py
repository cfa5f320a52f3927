"""
Stage Descriptors
=================
Tagged-variant description of the fixed deployment pipeline.

Each stage is a StageKind with a StageSpec (timeout, predecessors, retry
eligibility) and a typed output model. The PipelineDefinition groups the
stages into execution groups; stages in the same group are independent
and may run concurrently, groups run strictly in order.

Default order:
    checkout → (build-backend ‖ build-frontend) → test → scan → deploy → verify
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel

from app.core import config
from app.models.deployment import Finding, ImageRef, Severity
from app.models.health import HealthVerdict


class StageKind(str, Enum):
    CHECKOUT = "checkout"
    BUILD_BACKEND = "build-backend"
    BUILD_FRONTEND = "build-frontend"
    TEST = "test"
    SCAN = "scan"
    DEPLOY = "deploy"
    VERIFY = "verify"


@dataclass(frozen=True)
class StageSpec:
    kind: StageKind
    timeout_seconds: float
    predecessors: Tuple[StageKind, ...] = ()
    retryable: bool = True


class PipelineDefinition:
    """Ordered execution groups with predecessor validation."""

    def __init__(self, groups: Sequence[Sequence[StageSpec]]) -> None:
        self.groups: List[Tuple[StageSpec, ...]] = [tuple(g) for g in groups if g]
        self._specs: Dict[StageKind, StageSpec] = {}
        for group in self.groups:
            declared = set(self._specs)
            for spec in group:
                if spec.kind in self._specs:
                    raise ValueError(f"Stage '{spec.kind.value}' declared twice")
                missing = [p for p in spec.predecessors if p not in declared]
                if missing:
                    names = ", ".join(p.value for p in missing)
                    raise ValueError(
                        f"Stage '{spec.kind.value}' depends on stages not declared earlier: {names}"
                    )
            for spec in group:
                self._specs[spec.kind] = spec

    @property
    def order(self) -> List[StageKind]:
        return [spec.kind for group in self.groups for spec in group]

    def spec(self, kind: StageKind) -> StageSpec:
        return self._specs[kind]

    def position(self, kind: StageKind) -> int:
        return self.order.index(kind)


def default_pipeline(timeouts: Optional[Dict[StageKind, float]] = None) -> PipelineDefinition:
    t = {
        StageKind.CHECKOUT: config.CHECKOUT_TIMEOUT,
        StageKind.BUILD_BACKEND: config.BUILD_TIMEOUT,
        StageKind.BUILD_FRONTEND: config.BUILD_TIMEOUT,
        StageKind.TEST: config.TEST_TIMEOUT,
        StageKind.SCAN: config.SCAN_TIMEOUT,
        StageKind.DEPLOY: config.DEPLOY_TIMEOUT,
        StageKind.VERIFY: config.VERIFY_TIMEOUT,
    }
    if timeouts:
        t.update(timeouts)

    # A missing or invalid revision cannot be retried away.
    checkout = StageSpec(StageKind.CHECKOUT, t[StageKind.CHECKOUT], retryable=False)
    build_backend = StageSpec(StageKind.BUILD_BACKEND, t[StageKind.BUILD_BACKEND], (StageKind.CHECKOUT,))
    build_frontend = StageSpec(StageKind.BUILD_FRONTEND, t[StageKind.BUILD_FRONTEND], (StageKind.CHECKOUT,))
    test = StageSpec(StageKind.TEST, t[StageKind.TEST], (StageKind.BUILD_BACKEND, StageKind.BUILD_FRONTEND))
    scan = StageSpec(StageKind.SCAN, t[StageKind.SCAN], (StageKind.TEST,))
    # An apply that may have landed is rolled back, never repeated.
    deploy = StageSpec(StageKind.DEPLOY, t[StageKind.DEPLOY], (StageKind.SCAN,), retryable=False)
    verify = StageSpec(StageKind.VERIFY, t[StageKind.VERIFY], (StageKind.DEPLOY,), retryable=False)

    return PipelineDefinition([
        [checkout],
        [build_backend, build_frontend],
        [test],
        [scan],
        [deploy],
        [verify],
    ])


# ---------------------------------------------------------------------------
# Typed stage outputs
# ---------------------------------------------------------------------------
class CheckoutOutput(BaseModel):
    context_ref: str
    commit_ref: str


class BuildOutput(BaseModel):
    component: str
    image: ImageRef
    attempt_tag: str


class TestOutput(BaseModel):
    test_image: str
    exit_code: int
    log_excerpt: str = ""


class ScanOutput(BaseModel):
    threshold: Severity
    findings: Dict[str, List[Finding]] = {}
    blocking: List[Finding] = []


class DeployOutput(BaseModel):
    applied: Dict[str, ImageRef] = {}
    previous: Dict[str, ImageRef] = {}


class VerifyOutput(BaseModel):
    verdict: HealthVerdict


StageOutput = Union[CheckoutOutput, BuildOutput, TestOutput, ScanOutput, DeployOutput, VerifyOutput]
