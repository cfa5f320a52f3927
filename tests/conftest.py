"""
Shared fixtures — in-memory collaborators and a fully wired pipeline.

No docker daemon, git, trivy or network is touched by the test-suite.
Time inside the Health Gate and retry backoff is driven by FakeClock.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import pytest

from app.agents.health_gate import HealthGate
from app.agents.pipeline_engine import PipelineEngine
from app.core.errors import DeployError
from app.executor.collaborators import TestReport
from app.executor.stage_executor import RetryPolicy, StageExecutor
from app.executor.stage_operations import StageOperations
from app.models.deployment import Ack, DeploymentTarget, Finding, ImageRef, ServiceSpec
from app.models.health import CompositeHealth, HealthReport, ServiceHealth
from app.models.pipeline_request import PipelineRequest
from app.models.pipeline_run import RunState
from app.services.notifier import Notifier
from app.services.target_registry import TargetRegistry
from app.state.run_store import RunStore

COMMIT = "3f2a9c1e5b7d4f60a1b2c3d4e5f60718293a4b5c"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeSource:
    def __init__(self) -> None:
        self.checkouts: List[str] = []
        self.failures: List[Exception] = []
        self.delay = 0.0

    async def checkout(self, repository_url: str, commit_ref: str, run_id: str) -> str:
        self.checkouts.append(commit_ref)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return f"/workspace/{run_id}"


class FakeBuilder:
    """Records builds/tags/discards; ``failures[dockerfile_target]`` raises in order."""

    def __init__(self) -> None:
        self.built: List[tuple] = []
        self.tagged: List[str] = []
        self.discarded: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}

    async def build(self, context_ref, dockerfile_target, tag, build_args=None) -> ImageRef:
        self.built.append((dockerfile_target, tag, dict(build_args or {})))
        pending = self.failures.get(dockerfile_target)
        if pending:
            raise pending.pop(0)
        repository, _, image_tag = tag.rpartition(":")
        return ImageRef(repository=repository, tag=image_tag, image_id=f"sha256:{image_tag}")

    async def tag(self, image: ImageRef, tag: str) -> ImageRef:
        self.tagged.append(f"{image.repository}:{tag}")
        return ImageRef(repository=image.repository, tag=tag, image_id=image.image_id)

    async def discard(self, reference: str) -> None:
        self.discarded.append(reference)


class FakeTester:
    def __init__(self) -> None:
        self.exit_code = 0
        self.log = "5 passed"
        self.images: List[str] = []
        self.on_run: Optional[Callable[[], Awaitable[None]]] = None

    async def run_tests(self, image: ImageRef, command: str, timeout: float) -> TestReport:
        self.images.append(image.reference)
        if self.on_run is not None:
            await self.on_run()
        return TestReport(exit_code=self.exit_code, log=self.log)


class FakeScanner:
    """``findings[component]`` is returned for images whose tag names that component."""

    def __init__(self) -> None:
        self.findings: Dict[str, List[Finding]] = {}
        self.scanned: List[str] = []

    async def scan(self, image: ImageRef) -> List[Finding]:
        self.scanned.append(image.reference)
        for component, found in self.findings.items():
            if image.tag.endswith(component):
                return list(found)
        return []


class FakeRuntime:
    """
    Records every apply; call numbers listed in ``fail_calls`` (1-based) are
    rejected, those in ``hang_calls`` are recorded (the change lands) but
    never acknowledged.
    """

    def __init__(self) -> None:
        self.applies: List[Dict[str, str]] = []
        self.fail_calls: set = set()
        self.hang_calls: set = set()

    async def apply(self, target: DeploymentTarget, mapping: Dict[str, ImageRef]) -> Ack:
        self.applies.append({name: ref.reference for name, ref in mapping.items()})
        if len(self.applies) in self.hang_calls:
            await asyncio.sleep(60)
        if len(self.applies) in self.fail_calls:
            raise DeployError(f"runtime rejected apply #{len(self.applies)}")
        return Ack(target=target.name, applied=self.applies[-1])

    async def health_of(self, target: DeploymentTarget, service_name: str) -> ServiceHealth:
        return ServiceHealth.UP


class FakeProbe:
    """Replays ``statuses``; the last one repeats forever."""

    def __init__(self, statuses: Optional[List[CompositeHealth]] = None) -> None:
        self.statuses = list(statuses or [CompositeHealth.HEALTHY])
        self.calls = 0
        self.on_check: Optional[Callable[[], Awaitable[None]]] = None

    async def check(self, target: DeploymentTarget) -> HealthReport:
        if self.on_check is not None:
            await self.on_check()
        status = self.statuses[min(self.calls, len(self.statuses) - 1)]
        self.calls += 1
        return HealthReport(status=status)


class RecordingSink:
    def __init__(self) -> None:
        self.received = []

    async def emit(self, notification) -> None:
        self.received.append(notification)


def staging_target(with_images: bool = True) -> DeploymentTarget:
    def image(name):
        return ImageRef(repository="staging-app", tag=f"previous-{name}", run_id="run-previous")

    return DeploymentTarget(
        name="staging",
        services={
            "backend": ServiceSpec(
                name="backend", component="backend",
                health_url="http://backend/health", image=image("backend") if with_images else None,
            ),
            "frontend": ServiceSpec(
                name="frontend", component="frontend",
                health_url="http://frontend/", image=image("frontend") if with_images else None,
            ),
        },
    )


def push_request(commit: str = COMMIT, delivery_id: str = "delivery-1", target: str = "staging") -> PipelineRequest:
    return PipelineRequest(delivery_id=delivery_id, commit_ref=commit, branch="main", target=target)


class PipelineHarness:
    """Engine + store + fakes wired the way build_pipeline_service wires production."""

    def __init__(self, with_images: bool = True, max_retries: int = 2) -> None:
        self.clock = FakeClock()
        self.source = FakeSource()
        self.builder = FakeBuilder()
        self.tester = FakeTester()
        self.scanner = FakeScanner()
        self.runtime = FakeRuntime()
        self.probe = FakeProbe()
        self.gate = HealthGate(
            self.probe, interval=1.0, failure_threshold=3, clock=self.clock, sleep=self.clock.sleep
        )
        self.operations = StageOperations(
            self.source, self.builder, self.tester, self.scanner, self.runtime, self.gate,
            image_repository="staging-app",
            dockerfile_targets={"backend": "backend", "frontend": "frontend", "test": "test"},
            test_command="pytest -q",
            severity_threshold="HIGH",
            verify_deadline=10.0,
        )
        self.executor = StageExecutor(
            self.operations,
            RetryPolicy(max_retries=max_retries, backoff_seconds=0.5, backoff_cap_seconds=4.0),
            sleep=self.clock.sleep,
        )
        self.target = staging_target(with_images)
        self.registry = TargetRegistry([self.target])
        self.sink = RecordingSink()
        self.store = RunStore()
        self.engine = PipelineEngine(
            self.store, self.executor, self.registry, Notifier([self.sink]), clock=self.clock,
        )

    async def run(self, commit: str = COMMIT):
        run = await self.engine.create_run(push_request(commit))
        return await self.engine.execute(run.id)

    @property
    def notified_states(self) -> List[RunState]:
        return [n.state for n in self.sink.received]


@pytest.fixture
def harness():
    return PipelineHarness()


@pytest.fixture
def bare_harness():
    """Target that has never been deployed (no previous image set)."""
    return PipelineHarness(with_images=False)
