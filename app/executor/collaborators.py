"""
Collaborator Contracts
======================
The pipeline core never builds, scans or runs containers itself. It calls
these collaborators; ``docker_collaborators`` provides the production
implementations and the test-suite provides in-memory fakes.

Error contract for every collaborator:
    - raise TransientExecutionError when the tool/daemon is unavailable
      (retried per policy);
    - raise a PolicyFailure subclass (BuildError, CheckoutError) for a
      deterministic failure (never retried);
    - raise DeployError when the runtime rejects an apply; the target must
      be left serving its previous images.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from app.models.deployment import Ack, DeploymentTarget, Finding, ImageRef
from app.models.health import HealthReport, ServiceHealth


@dataclass
class TestReport:
    """Outcome of one test-suite execution inside a fresh container."""
    __test__ = False

    exit_code: int
    log: str = ""
    duration_seconds: float = 0.0


class SourceCollaborator(Protocol):
    async def checkout(self, repository_url: str, commit_ref: str, run_id: str) -> str:
        """Fetch the revision; return a build context reference (path)."""
        ...


class BuildCollaborator(Protocol):
    async def build(
        self,
        context_ref: str,
        dockerfile_target: str,
        tag: str,
        build_args: Optional[Dict[str, str]] = None,
    ) -> ImageRef:
        ...

    async def tag(self, image: ImageRef, tag: str) -> ImageRef:
        ...

    async def discard(self, reference: str) -> None:
        """Best-effort removal of a tag; must not raise for a missing tag."""
        ...


class TestCollaborator(Protocol):
    async def run_tests(self, image: ImageRef, command: str, timeout: float) -> TestReport:
        ...


class ScanCollaborator(Protocol):
    async def scan(self, image: ImageRef) -> List[Finding]:
        ...


class RuntimeCollaborator(Protocol):
    async def apply(self, target: DeploymentTarget, mapping: Dict[str, ImageRef]) -> Ack:
        ...

    async def health_of(self, target: DeploymentTarget, service_name: str) -> ServiceHealth:
        ...


class HealthProbe(Protocol):
    async def check(self, target: DeploymentTarget) -> HealthReport:
        ...
