"""
Health Models
Composite health reports produced by a HealthProbe and the verdict the
Health Gate derives from a sequence of them.
"""
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel


class ServiceHealth(str, Enum):
    UP = "Up"
    DOWN = "Down"
    DEGRADED = "Degraded"


class CompositeHealth(str, Enum):
    HEALTHY = "healthy"     # application AND its dependencies reachable
    PARTIAL = "partial"     # not yet healthy (warm-up, unreachable, degraded)
    FAILED = "failed"       # definitive failure state


class HealthReport(BaseModel):
    status: CompositeHealth
    services: Dict[str, Dict[str, str]] = {}


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    TIMED_OUT = "TimedOut"


class HealthVerdict(BaseModel):
    status: HealthStatus
    polls: int = 0
    elapsed_seconds: float = 0.0
    last_report: Optional[HealthReport] = None
