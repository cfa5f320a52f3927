"""
Stage Operations
================
One coroutine per StageKind. Each takes the run's RunContext and the
1-based attempt number and returns that stage's typed output, or raises
a PipelineError subclass.

Attempt attribution:
    Images are first tagged "<repo>:<run_id>-<component>-a<attempt>".
    Only a successful attempt is re-tagged to the canonical
    "<repo>:<run_id>-<component>" reference; the attempt tag is discarded
    on success, failure and cancellation alike, so a retried stage never
    leaves output that could be mistaken for the successful attempt.

Side effects on the DeploymentTarget happen in deploy() only.
"""
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from app.agents.health_gate import HealthGate
from app.core.config import (
    BACKEND_DOCKERFILE_TARGET,
    FRONTEND_DOCKERFILE_TARGET,
    IMAGE_REPOSITORY,
    SCAN_SEVERITY_THRESHOLD,
    TEST_COMMAND,
    TEST_DOCKERFILE_TARGET,
    TEST_TIMEOUT,
    VERIFY_DEADLINE_SECONDS,
)
from app.core.constants import BACKEND, COMPONENTS, FRONTEND
from app.core.errors import (
    DeployError,
    ScanThresholdBreach,
    TestFailure,
    UnhealthyTarget,
)
from app.executor.collaborators import (
    BuildCollaborator,
    RuntimeCollaborator,
    ScanCollaborator,
    SourceCollaborator,
    TestCollaborator,
)
from app.executor.docker_collaborators import create_log_excerpt
from app.models.deployment import Finding, ImageRef, Severity
from app.models.health import HealthStatus
from app.models.run_context import RunContext
from app.models.stage import (
    BuildOutput,
    CheckoutOutput,
    DeployOutput,
    ScanOutput,
    StageKind,
    StageOutput,
    TestOutput,
    VerifyOutput,
)

logger = logging.getLogger(__name__)

StageOperation = Callable[[RunContext, int], Awaitable[StageOutput]]


class StageOperations:
    """Binds the external collaborators to the seven pipeline stages."""

    def __init__(
        self,
        source: SourceCollaborator,
        builder: BuildCollaborator,
        tester: TestCollaborator,
        scanner: ScanCollaborator,
        runtime: RuntimeCollaborator,
        health_gate: HealthGate,
        *,
        image_repository: str = IMAGE_REPOSITORY,
        dockerfile_targets: Optional[Dict[str, str]] = None,
        test_command: str = TEST_COMMAND,
        test_timeout: float = TEST_TIMEOUT,
        severity_threshold: str = SCAN_SEVERITY_THRESHOLD,
        verify_deadline: float = VERIFY_DEADLINE_SECONDS,
    ) -> None:
        self.source = source
        self.builder = builder
        self.tester = tester
        self.scanner = scanner
        self.runtime = runtime
        self.health_gate = health_gate
        self.image_repository = image_repository
        self.dockerfile_targets = {
            BACKEND: BACKEND_DOCKERFILE_TARGET,
            FRONTEND: FRONTEND_DOCKERFILE_TARGET,
            "test": TEST_DOCKERFILE_TARGET,
        }
        if dockerfile_targets:
            self.dockerfile_targets.update(dockerfile_targets)
        self.test_command = test_command
        self.test_timeout = test_timeout
        self.severity_threshold = Severity.parse(severity_threshold)
        self.verify_deadline = verify_deadline

        self._dispatch: Dict[StageKind, StageOperation] = {
            StageKind.CHECKOUT: self.checkout,
            StageKind.BUILD_BACKEND: self.build_backend,
            StageKind.BUILD_FRONTEND: self.build_frontend,
            StageKind.TEST: self.test,
            StageKind.SCAN: self.scan,
            StageKind.DEPLOY: self.deploy,
            StageKind.VERIFY: self.verify,
        }

    def for_kind(self, kind: StageKind) -> StageOperation:
        return self._dispatch[kind]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _attempt_tag(self, ctx: RunContext, name: str, attempt: int) -> str:
        return f"{self.image_repository}:{ctx.run_id}-{name}-a{attempt}"

    async def _discard(self, reference: str) -> None:
        try:
            await self.builder.discard(reference)
        except Exception:
            logger.warning("Could not discard %s", reference, exc_info=True)

    # ------------------------------------------------------------------
    # 1. checkout
    # ------------------------------------------------------------------
    async def checkout(self, ctx: RunContext, attempt: int) -> CheckoutOutput:
        ctx.context_ref = await self.source.checkout(ctx.repository_url, ctx.commit_ref, ctx.run_id)
        return CheckoutOutput(context_ref=ctx.context_ref, commit_ref=ctx.commit_ref)

    # ------------------------------------------------------------------
    # 2. build-backend / build-frontend
    # ------------------------------------------------------------------
    async def build_backend(self, ctx: RunContext, attempt: int) -> BuildOutput:
        return await self._build(BACKEND, ctx, attempt)

    async def build_frontend(self, ctx: RunContext, attempt: int) -> BuildOutput:
        return await self._build(FRONTEND, ctx, attempt)

    async def _build(self, component: str, ctx: RunContext, attempt: int) -> BuildOutput:
        attempt_tag = self._attempt_tag(ctx, component, attempt)
        try:
            built = await self.builder.build(
                ctx.context_ref, self.dockerfile_targets[component], attempt_tag
            )
            canonical = await self.builder.tag(built, f"{ctx.run_id}-{component}")
        finally:
            # The canonical tag keeps the image alive; the attempt tag never outlives the attempt.
            await self._discard(attempt_tag)

        image = canonical.model_copy(update={"run_id": ctx.run_id})
        ctx.images[component] = image
        logger.info("[run:%s] %s image ready: %s", ctx.run_id, component, image.reference)
        return BuildOutput(component=component, image=image, attempt_tag=attempt_tag)

    # ------------------------------------------------------------------
    # 3. test: fresh image derived from this run's backend artifact
    # ------------------------------------------------------------------
    async def test(self, ctx: RunContext, attempt: int) -> TestOutput:
        backend = ctx.images[BACKEND]
        test_tag = self._attempt_tag(ctx, "test", attempt)
        try:
            test_image = await self.builder.build(
                ctx.context_ref,
                self.dockerfile_targets["test"],
                test_tag,
                build_args={"BACKEND_IMAGE": backend.reference},
            )
            report = await self.tester.run_tests(test_image, self.test_command, self.test_timeout)
        finally:
            await self._discard(test_tag)

        excerpt = create_log_excerpt(report.log)
        if report.exit_code != 0:
            raise TestFailure(
                f"Test suite failed with exit code {report.exit_code}",
                detail={"exit_code": report.exit_code, "log_excerpt": excerpt, "test_image": test_tag},
            )
        return TestOutput(test_image=test_tag, exit_code=report.exit_code, log_excerpt=excerpt)

    # ------------------------------------------------------------------
    # 4. scan: both images, threshold gate
    # ------------------------------------------------------------------
    async def scan(self, ctx: RunContext, attempt: int) -> ScanOutput:
        findings: Dict[str, List[Finding]] = {}
        for component in COMPONENTS:
            findings[component] = list(await self.scanner.scan(ctx.images[component]))

        threshold = self.severity_threshold
        blocking = [
            f for component in COMPONENTS for f in findings[component]
            if f.severity.rank >= threshold.rank
        ]
        output = ScanOutput(threshold=threshold, findings=findings, blocking=blocking)
        if blocking:
            raise ScanThresholdBreach(
                f"{len(blocking)} finding(s) at or above {threshold.value}",
                detail=output.model_dump(mode="json"),
            )
        below = sum(len(v) for v in findings.values())
        if below:
            logger.info("[run:%s] %d finding(s) below %s recorded", ctx.run_id, below, threshold.value)
        return output

    # ------------------------------------------------------------------
    # 5. deploy: the only step that mutates the DeploymentTarget
    # ------------------------------------------------------------------
    async def deploy(self, ctx: RunContext, attempt: int) -> DeployOutput:
        mapping: Dict[str, ImageRef] = {
            spec.name: ctx.images[spec.component]
            for spec in ctx.target.deployable_services()
            if spec.component in ctx.images
        }
        if not mapping:
            raise DeployError(f"Target {ctx.target.name} has no services to deploy")

        # Recorded before the runtime is touched: a timed-out apply may still land.
        serving = ctx.target.image_set()
        ctx.previous_images = {name: serving[name] for name in mapping if name in serving}
        ctx.apply_issued = True

        ack = await self.runtime.apply(ctx.target, mapping)
        ctx.target.swap(mapping)
        ctx.deployed = True
        logger.info("[run:%s] Target %s now serving %s", ctx.run_id, ack.target, ack.applied)
        return DeployOutput(applied=mapping, previous=ctx.previous_images)

    # ------------------------------------------------------------------
    # 6. verify: Health Gate
    # ------------------------------------------------------------------
    async def verify(self, ctx: RunContext, attempt: int) -> VerifyOutput:
        deadline = self.health_gate.clock() + self.verify_deadline
        verdict = await self.health_gate.verify(ctx.target, deadline)
        output = VerifyOutput(verdict=verdict)
        if verdict.status is not HealthStatus.HEALTHY:
            raise UnhealthyTarget(
                f"Target {ctx.target.name} {verdict.status.value} after {verdict.polls} poll(s)",
                detail=output.model_dump(mode="json"),
            )
        return output
