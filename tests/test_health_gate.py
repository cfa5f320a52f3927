"""
Health Gate Tests
=================
Poll loop verdicts driven by a fake clock.
"""
import asyncio

from app.agents.health_gate import HealthGate
from app.models.health import CompositeHealth, HealthStatus

from conftest import FakeClock, FakeProbe, staging_target


def _gate(statuses, threshold=3, interval=2.0):
    clock = FakeClock(start=0.0)
    probe = FakeProbe(statuses)
    gate = HealthGate(probe, interval=interval, failure_threshold=threshold, clock=clock, sleep=clock.sleep)
    return gate, probe, clock


def test_healthy_on_first_poll():
    gate, probe, clock = _gate([CompositeHealth.HEALTHY])
    verdict = asyncio.run(gate.verify(staging_target(), deadline=30.0))

    assert verdict.status is HealthStatus.HEALTHY
    assert verdict.polls == 1
    assert clock.sleeps == []


def test_consecutive_failures_reach_threshold():
    gate, probe, clock = _gate([CompositeHealth.FAILED])
    verdict = asyncio.run(gate.verify(staging_target(), deadline=30.0))

    assert verdict.status is HealthStatus.UNHEALTHY
    assert verdict.polls == 3
    assert verdict.last_report.status is CompositeHealth.FAILED


def test_intermittent_failure_resets_counter():
    gate, probe, clock = _gate([
        CompositeHealth.FAILED,
        CompositeHealth.FAILED,
        CompositeHealth.PARTIAL,
        CompositeHealth.FAILED,
        CompositeHealth.HEALTHY,
    ])
    verdict = asyncio.run(gate.verify(staging_target(), deadline=30.0))

    assert verdict.status is HealthStatus.HEALTHY
    assert verdict.polls == 5


def test_partial_until_deadline_times_out():
    gate, probe, clock = _gate([CompositeHealth.PARTIAL], interval=2.0)
    verdict = asyncio.run(gate.verify(staging_target(), deadline=5.0))

    assert verdict.status is HealthStatus.TIMED_OUT
    # Polls at t=0, 2, 4, 5 (last sleep shortened to the deadline)
    assert verdict.polls == 4
    assert clock.sleeps == [2.0, 2.0, 1.0]
    assert verdict.elapsed_seconds == 5.0


def test_probe_error_counts_as_not_yet_healthy():
    class FlakyProbe:
        def __init__(self):
            self.calls = 0

        async def check(self, target):
            self.calls += 1
            if self.calls == 1:
                raise ConnectionError("connection refused")
            return await FakeProbe([CompositeHealth.HEALTHY]).check(target)

    clock = FakeClock(start=0.0)
    gate = HealthGate(FlakyProbe(), interval=1.0, failure_threshold=1, clock=clock, sleep=clock.sleep)
    verdict = asyncio.run(gate.verify(staging_target(), deadline=10.0))

    assert verdict.status is HealthStatus.HEALTHY
    assert verdict.polls == 2
