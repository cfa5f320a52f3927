"""
Health Gate
===========
Post-deploy verifier. Polls the target's composite health until one of:

    Healthy   — every service reachable AND its declared dependencies
                (e.g. the database) reachable.
    Unhealthy — a definitive failure reported HEALTH_FAILURE_THRESHOLD
                consecutive times. No further waiting; triggers rollback.
    TimedOut  — the deadline elapsed first. Also triggers rollback.

Partial health (application up, dependency down, endpoint not yet
reachable) is "not yet healthy", never an immediate failure, so a
database that is still warming up does not cause a rollback.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from app.core.config import HEALTH_FAILURE_THRESHOLD, HEALTH_POLL_INTERVAL
from app.executor.collaborators import HealthProbe
from app.models.deployment import DeploymentTarget
from app.models.health import CompositeHealth, HealthReport, HealthStatus, HealthVerdict

logger = logging.getLogger(__name__)


class HealthGate:
    """
    Fixed-interval poll loop over a HealthProbe.

    ``clock`` and ``sleep`` are injectable so the loop can be driven
    deterministically; ``deadline`` is an absolute value of ``clock``.
    """

    def __init__(
        self,
        probe: HealthProbe,
        interval: float = HEALTH_POLL_INTERVAL,
        failure_threshold: int = HEALTH_FAILURE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.probe = probe
        self.interval = interval
        self.failure_threshold = max(1, failure_threshold)
        self.clock = clock
        self._sleep = sleep

    async def _poll(self, target: DeploymentTarget) -> HealthReport:
        try:
            return await self.probe.check(target)
        except Exception as e:
            # A probe that cannot reach anything is not a definitive failure.
            logger.warning("Health probe error on %s: %s", target.name, e)
            return HealthReport(status=CompositeHealth.PARTIAL, services={"probe": {"error": str(e)}})

    async def verify(self, target: DeploymentTarget, deadline: float) -> HealthVerdict:
        start = self.clock()
        polls = 0
        consecutive_failures = 0
        last_status: Optional[CompositeHealth] = None
        report: Optional[HealthReport] = None

        def verdict(status: HealthStatus) -> HealthVerdict:
            return HealthVerdict(
                status=status,
                polls=polls,
                elapsed_seconds=round(self.clock() - start, 3),
                last_report=report,
            )

        while True:
            report = await self._poll(target)
            polls += 1

            if report.status is CompositeHealth.HEALTHY:
                logger.info("Target %s healthy after %d poll(s)", target.name, polls)
                return verdict(HealthStatus.HEALTHY)

            if report.status is CompositeHealth.FAILED:
                consecutive_failures += 1
                if consecutive_failures >= self.failure_threshold:
                    logger.warning(
                        "Target %s unhealthy (%d consecutive failures)", target.name, consecutive_failures
                    )
                    return verdict(HealthStatus.UNHEALTHY)
            else:
                consecutive_failures = 0

            if report.status != last_status:
                logger.info("Target %s health: %s", target.name, report.status.value)
                last_status = report.status

            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.warning("Target %s did not become healthy before the deadline", target.name)
                return verdict(HealthStatus.TIMED_OUT)
            await self._sleep(min(self.interval, remaining))
