"""
Docker Collaborators
====================
Production implementations of the collaborator contracts.

    GitSource         — checkout: clone + detached checkout per run workspace
    DockerBuilder     — build / re-tag / discard images (docker SDK)
    DockerTestRunner  — run the test suite in a fresh, ephemeral container
    DockerRuntime     — apply an image set to a target's service containers,
                        report per-service running/health status
    TrivyScanner      — vulnerability scan via the trivy CLI (JSON output)
    HttpHealthProbe   — composite health from runtime status + health endpoints

BOUNDARY RULES:
    - Collaborators ONLY execute. They never decide gating, retries or rollback.
    - Blocking docker / subprocess calls run in a worker thread
      (asyncio.to_thread) so the event loop keeps serving webhooks.
    - Infrastructure failures surface as TransientExecutionError; deterministic
      failures as PolicyFailure subclasses (see app.core.errors).

DOCKER STRATEGY:
    - One workspace per run under WORKSPACE_ROOT/<run_id>.
    - Test containers are ephemeral: destroyed after execution, always.
    - Service containers are named "<target>-<service>" and labelled with
      the target/service so the runtime can find and replace them.
"""
import asyncio
import json
import logging
import os
import subprocess
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

import docker
import httpx
import requests
from docker.errors import (
    APIError,
    BuildError as DockerBuildError,
    DockerException,
    ImageNotFound,
    NotFound,
)

from app.core.config import REPO_URL, SCAN_TIMEOUT, TEST_NETWORK_MODE, WORKSPACE_ROOT
from app.core.constants import IMAGE_LABELS
from app.core.errors import (
    BuildError,
    CheckoutError,
    DeployError,
    TransientExecutionError,
)
from app.executor.collaborators import RuntimeCollaborator, TestReport
from app.models.deployment import Ack, DeploymentTarget, Finding, ImageRef, ServiceSpec, Severity
from app.models.health import CompositeHealth, HealthReport, ServiceHealth

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, it is returned as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


def _split_reference(reference: str) -> Tuple[str, str]:
    repository, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return reference, "latest"
    return repository, tag


# ---------------------------------------------------------------------------
# Source checkout
# ---------------------------------------------------------------------------
class GitSource:
    """Clones the repository into a per-run workspace and checks out one revision."""

    def __init__(self, workspace_root: str = WORKSPACE_ROOT, repository_url: str = REPO_URL) -> None:
        self.workspace_root = workspace_root
        self.repository_url = repository_url

    async def checkout(self, repository_url: str, commit_ref: str, run_id: str) -> str:
        return await asyncio.to_thread(
            self._checkout_sync, repository_url or self.repository_url, commit_ref, run_id
        )

    def _git(self, *args: str, cwd: Optional[str] = None) -> None:
        subprocess.run(["git", *args], check=True, capture_output=True, text=True, cwd=cwd)

    def _checkout_sync(self, repository_url: str, commit_ref: str, run_id: str) -> str:
        if not repository_url:
            raise CheckoutError("No repository URL configured for checkout")

        os.makedirs(self.workspace_root, exist_ok=True)
        dest_path = os.path.abspath(os.path.join(self.workspace_root, run_id))

        logger.info("Checking out %s@%s into %s", repository_url, commit_ref[:12], dest_path)
        try:
            if not os.path.exists(os.path.join(dest_path, ".git")):
                self._git("clone", "--no-checkout", repository_url, dest_path)
            self._git("checkout", "--detach", commit_ref, cwd=dest_path)
        except FileNotFoundError:
            raise TransientExecutionError("git executable not available")
        except subprocess.CalledProcessError as e:
            logger.error("Checkout failed: %s", e.stderr)
            raise CheckoutError(
                f"Checkout of {commit_ref} failed",
                detail={"stderr": (e.stderr or "")[-2000:]},
            )
        return dest_path


# ---------------------------------------------------------------------------
# Docker-backed collaborators
# ---------------------------------------------------------------------------
class _DockerCollaborator:
    """Lazily creates the docker client so importing never needs a daemon."""

    def __init__(self, client: Optional[docker.DockerClient] = None) -> None:
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise TransientExecutionError(f"Docker daemon unavailable: {e}")
        return self._client


class DockerBuilder(_DockerCollaborator):
    """Builds images from a checked-out context and manages their tags."""

    async def build(
        self,
        context_ref: str,
        dockerfile_target: str,
        tag: str,
        build_args: Optional[Dict[str, str]] = None,
    ) -> ImageRef:
        return await asyncio.to_thread(self._build_sync, context_ref, dockerfile_target, tag, build_args)

    def _build_sync(
        self,
        context_ref: str,
        dockerfile_target: str,
        tag: str,
        build_args: Optional[Dict[str, str]],
    ) -> ImageRef:
        logger.info("Building image | target=%s | tag=%s | context=%s", dockerfile_target, tag, context_ref)
        start = time.monotonic()
        try:
            image, _ = self.client.images.build(
                path=context_ref,
                target=dockerfile_target,
                tag=tag,
                buildargs=build_args or {},
                labels=IMAGE_LABELS,
                rm=True,
                forcerm=True,
            )
        except DockerBuildError as e:
            build_log = "".join(
                chunk.get("stream", "") for chunk in (e.build_log or []) if isinstance(chunk, dict)
            )
            raise BuildError(
                f"Build of target '{dockerfile_target}' failed: {e.msg}",
                detail={"log_excerpt": create_log_excerpt(build_log)},
            )
        except (APIError, requests.exceptions.RequestException) as e:
            raise TransientExecutionError(f"Docker API error during build: {e}")

        logger.info("Built %s in %.2fs", tag, time.monotonic() - start)
        repository, image_tag = _split_reference(tag)
        return ImageRef(repository=repository, tag=image_tag, image_id=image.id or "")

    async def tag(self, image: ImageRef, tag: str) -> ImageRef:
        return await asyncio.to_thread(self._tag_sync, image, tag)

    def _tag_sync(self, image: ImageRef, tag: str) -> ImageRef:
        try:
            docker_image = self.client.images.get(image.reference)
            docker_image.tag(image.repository, tag=tag)
        except ImageNotFound:
            raise TransientExecutionError(f"Image {image.reference} vanished before re-tag")
        except (APIError, requests.exceptions.RequestException) as e:
            raise TransientExecutionError(f"Docker API error during tag: {e}")
        return ImageRef(repository=image.repository, tag=tag, image_id=image.image_id)

    async def discard(self, reference: str) -> None:
        await asyncio.to_thread(self._discard_sync, reference)

    def _discard_sync(self, reference: str) -> None:
        try:
            self.client.images.remove(reference, force=True, noprune=False)
            logger.debug("Discarded image tag %s", reference)
        except ImageNotFound:
            pass
        except (APIError, TransientExecutionError, requests.exceptions.RequestException):
            logger.warning("Failed to discard image tag %s", reference, exc_info=True)


# Docker resource limits for test containers
_MEMORY_LIMIT = "2g"
_CPU_COUNT = 2


class DockerTestRunner(_DockerCollaborator):
    """
    Runs the test command inside a brand-new container of the given image.

    The container is removed when the tests finish, and also when the
    awaiting task is cancelled (stage timeout), so an abandoned attempt
    never keeps running next to its retry.
    """
    __test__ = False

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        network_mode: Optional[str] = TEST_NETWORK_MODE,
    ) -> None:
        super().__init__(client)
        self.network_mode = network_mode or None

    async def run_tests(self, image: ImageRef, command: str, timeout: float) -> TestReport:
        name = f"pipeline-test-{image.tag}-{uuid.uuid4().hex[:8]}"
        try:
            return await asyncio.to_thread(self._run_sync, image, command, timeout, name)
        except asyncio.CancelledError:
            logger.warning("Test run cancelled, removing container %s", name)
            await asyncio.to_thread(self._force_remove, name)
            raise

    def _force_remove(self, name: str) -> None:
        try:
            self.client.containers.get(name).remove(force=True)
        except NotFound:
            pass
        except (APIError, requests.exceptions.RequestException):
            logger.warning("Failed to remove cancelled test container %s", name, exc_info=True)

    def _run_sync(self, image: ImageRef, command: str, timeout: float, name: str) -> TestReport:
        container = None
        start = time.monotonic()
        try:
            logger.info("Starting test container | image=%s | timeout=%.0fs", image.reference, timeout)
            container = self.client.containers.run(
                image=image.reference,
                command=["sh", "-c", command],
                environment={"CI": "true"},
                mem_limit=_MEMORY_LIMIT,
                nano_cpus=_CPU_COUNT * 1_000_000_000,
                network_mode=self.network_mode,
                name=name,
                labels={**IMAGE_LABELS, "role": "test"},
                detach=True,
            )
            wait_result = container.wait(timeout=timeout)
            exit_code = wait_result.get("StatusCode", -1)
            log = container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")
        except ImageNotFound:
            raise TransientExecutionError(f"Test image '{image.reference}' not found")
        except requests.exceptions.RequestException as e:
            raise TransientExecutionError(f"Test container did not finish: {e}")
        except APIError as e:
            raise TransientExecutionError(f"Docker API error during tests: {e}")
        finally:
            # Always destroy the container
            if container is not None:
                try:
                    container.remove(force=True)
                    logger.info("Container %s destroyed", container.short_id)
                except (APIError, requests.exceptions.RequestException):
                    logger.warning("Failed to remove container", exc_info=True)

        duration = round(time.monotonic() - start, 3)
        logger.info("Tests complete | exit=%d | time=%.2fs", exit_code, duration)
        return TestReport(exit_code=exit_code, log=log, duration_seconds=duration)


def _container_name(target: DeploymentTarget, service: str) -> str:
    return f"{target.name}-{service}"


class DockerRuntime(_DockerCollaborator):
    """
    Replaces the service containers of a target.

    apply() is all-or-nothing: every image must exist before any container
    is touched, and if a container fails to start midway the services
    already replaced are restarted from their previous images before
    DeployError is raised.

    Applies are serialized. An apply whose caller timed out keeps running
    in its worker thread; a later apply (e.g. the rollback) waits for it
    instead of racing it container by container.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None) -> None:
        super().__init__(client)
        self._apply_lock = threading.Lock()

    async def apply(self, target: DeploymentTarget, mapping: Dict[str, ImageRef]) -> Ack:
        return await asyncio.to_thread(self._apply_locked, target, mapping)

    def _apply_locked(self, target: DeploymentTarget, mapping: Dict[str, ImageRef]) -> Ack:
        with self._apply_lock:
            return self._apply_sync(target, mapping)

    def _run_service(self, target: DeploymentTarget, spec: ServiceSpec, image: ImageRef) -> None:
        name = _container_name(target, spec.name)
        try:
            self.client.containers.get(name).remove(force=True)
        except NotFound:
            pass
        self.client.containers.run(
            image=image.reference,
            name=name,
            environment=spec.environment,
            ports=spec.ports,
            labels={**IMAGE_LABELS, "target": target.name, "service": spec.name},
            restart_policy={"Name": "unless-stopped"},
            detach=True,
        )

    def _apply_sync(self, target: DeploymentTarget, mapping: Dict[str, ImageRef]) -> Ack:
        try:
            for image in mapping.values():
                self.client.images.get(image.reference)
        except ImageNotFound as e:
            raise DeployError(f"Image missing before apply: {e}")
        except (APIError, requests.exceptions.RequestException) as e:
            raise TransientExecutionError(f"Docker API error before apply: {e}")

        previous = target.image_set()
        replaced: List[str] = []
        try:
            for service, image in mapping.items():
                logger.info("Applying %s -> %s on target %s", service, image.reference, target.name)
                self._run_service(target, target.services[service], image)
                replaced.append(service)
        except (APIError, requests.exceptions.RequestException) as e:
            logger.error("Apply failed on %s after %d service(s): %s", target.name, len(replaced), e)
            self._restore(target, replaced + [s for s in mapping if s not in replaced], previous)
            raise DeployError(f"Runtime rejected apply on target {target.name}: {e}")

        return Ack(
            target=target.name,
            applied={service: image.reference for service, image in mapping.items()},
        )

    def _restore(self, target: DeploymentTarget, services: List[str], previous: Dict[str, ImageRef]) -> None:
        for service in services:
            image = previous.get(service)
            if image is None:
                continue
            try:
                self._run_service(target, target.services[service], image)
            except (APIError, requests.exceptions.RequestException):
                logger.critical(
                    "Could not restore %s on %s to %s", service, target.name, image.reference, exc_info=True
                )

    async def health_of(self, target: DeploymentTarget, service_name: str) -> ServiceHealth:
        return await asyncio.to_thread(self._health_sync, target, service_name)

    def _health_sync(self, target: DeploymentTarget, service_name: str) -> ServiceHealth:
        try:
            container = self.client.containers.get(_container_name(target, service_name))
            container.reload()
        except NotFound:
            return ServiceHealth.DOWN
        except (APIError, requests.exceptions.RequestException) as e:
            raise TransientExecutionError(f"Docker API error reading health: {e}")

        if container.status in ("exited", "dead"):
            return ServiceHealth.DOWN
        if container.status != "running":
            return ServiceHealth.DEGRADED
        health = (container.attrs.get("State") or {}).get("Health") or {}
        status = health.get("Status")
        if status == "unhealthy":
            return ServiceHealth.DOWN
        if status == "starting":
            return ServiceHealth.DEGRADED
        return ServiceHealth.UP


# ---------------------------------------------------------------------------
# Vulnerability scanner
# ---------------------------------------------------------------------------
class TrivyScanner:
    """Runs ``trivy image --format json`` and flattens the vulnerabilities."""

    def __init__(self, executable: str = "trivy", timeout_seconds: float = SCAN_TIMEOUT) -> None:
        self.executable = executable
        self.timeout_seconds = timeout_seconds

    async def scan(self, image: ImageRef) -> List[Finding]:
        return await asyncio.to_thread(self._scan_sync, image)

    def _scan_sync(self, image: ImageRef) -> List[Finding]:
        logger.info("Scanning %s", image.reference)
        try:
            result = subprocess.run(
                [self.executable, "image", "--quiet", "--format", "json", image.reference],
                capture_output=True, text=True, timeout=self.timeout_seconds,
            )
        except FileNotFoundError:
            raise TransientExecutionError(f"Scanner '{self.executable}' not installed")
        except subprocess.TimeoutExpired:
            raise TransientExecutionError(f"Scanner timed out after {self.timeout_seconds}s")

        if result.returncode != 0:
            raise TransientExecutionError(
                f"Scanner exited with {result.returncode}",
                detail={"stderr": result.stderr[-2000:]},
            )
        return parse_trivy_report(result.stdout)


def parse_trivy_report(raw: str) -> List[Finding]:
    """Flatten trivy JSON into ordered findings (most severe first)."""
    try:
        report = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise TransientExecutionError(f"Unreadable scanner output: {e}")

    findings: List[Finding] = []
    for target_result in report.get("Results") or []:
        for vuln in target_result.get("Vulnerabilities") or []:
            findings.append(Finding(
                id=vuln.get("VulnerabilityID", "UNKNOWN"),
                severity=Severity.parse(vuln.get("Severity", "UNKNOWN")),
                package=vuln.get("PkgName", ""),
                title=vuln.get("Title", ""),
            ))
    findings.sort(key=lambda f: f.severity.rank, reverse=True)
    return findings


# ---------------------------------------------------------------------------
# Health probe
# ---------------------------------------------------------------------------
_OK_STATES = {"ok", "up", "healthy", "pass", "passing", "connected"}
_FAILURE_STATES = {"fail", "failed", "error", "unhealthy", "down"}


def evaluate_health_body(status_code: int, body: Dict[str, Any]) -> CompositeHealth:
    """
    Classify one health-endpoint response.

    - explicit failure status                       → FAILED
    - 2xx, ok status, every dependency ok           → HEALTHY
    - 2xx but a dependency (e.g. database) not ok   → PARTIAL
    - anything else (5xx during warm-up, no body)   → PARTIAL
    """
    status = str(body.get("status", "")).lower()
    if status in _FAILURE_STATES:
        return CompositeHealth.FAILED
    if not 200 <= status_code < 300:
        return CompositeHealth.PARTIAL
    if status and status not in _OK_STATES:
        return CompositeHealth.PARTIAL

    dependencies: Dict[str, Any] = {}
    if isinstance(body.get("dependencies"), dict):
        dependencies.update(body["dependencies"])
    if "database" in body:
        dependencies["database"] = body["database"]
    if all(str(v).lower() in _OK_STATES for v in dependencies.values()):
        return CompositeHealth.HEALTHY
    return CompositeHealth.PARTIAL


class HttpHealthProbe:
    """Combines runtime container status with each service's health endpoint."""

    def __init__(
        self,
        runtime: Optional[RuntimeCollaborator] = None,
        request_timeout: float = 5.0,
    ) -> None:
        self.runtime = runtime
        self.request_timeout = request_timeout

    async def check(self, target: DeploymentTarget) -> HealthReport:
        services: Dict[str, Dict[str, str]] = {}
        verdicts: List[CompositeHealth] = []
        async with httpx.AsyncClient(timeout=self.request_timeout) as client:
            for spec in target.services.values():
                verdict, info = await self._check_service(client, target, spec)
                verdicts.append(verdict)
                services[spec.name] = {"status": verdict.value, **info}

        if any(v is CompositeHealth.FAILED for v in verdicts):
            overall = CompositeHealth.FAILED
        elif all(v is CompositeHealth.HEALTHY for v in verdicts):
            overall = CompositeHealth.HEALTHY
        else:
            overall = CompositeHealth.PARTIAL
        return HealthReport(status=overall, services=services)

    async def _check_service(
        self,
        client: httpx.AsyncClient,
        target: DeploymentTarget,
        spec: ServiceSpec,
    ) -> Tuple[CompositeHealth, Dict[str, str]]:
        if self.runtime is not None:
            runtime_health = await self.runtime.health_of(target, spec.name)
            if runtime_health is ServiceHealth.DOWN:
                return CompositeHealth.FAILED, {"runtime": runtime_health.value}
            if runtime_health is ServiceHealth.DEGRADED:
                return CompositeHealth.PARTIAL, {"runtime": runtime_health.value}

        if not spec.health_url:
            return CompositeHealth.HEALTHY, {}

        try:
            response = await client.get(spec.health_url)
        except httpx.HTTPError as e:
            return CompositeHealth.PARTIAL, {"error": f"unreachable: {type(e).__name__}"}

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return evaluate_health_body(response.status_code, body), {"http_status": str(response.status_code)}
