"""
Deployment Models
=================
Pydantic models for built images, scan findings and the staging
DeploymentTarget.

ImageRef:
    Opaque handle returned by a successful build. Owned by the run that
    produced it (``run_id``); two runs never share an ImageRef even when
    the underlying image bytes are identical.

DeploymentTarget:
    Named set of services, each with its current ImageRef and health
    endpoint. Mutated only through ``swap`` (deploy stage) and read by
    the Health Gate.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ImageRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str
    run_id: str = ""
    image_id: str = ""

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return self.reference


class Severity(str, Enum):
    UNKNOWN = "UNKNOWN"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str) -> "Severity":
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN


_SEVERITY_RANK = {
    Severity.UNKNOWN: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class Finding(BaseModel):
    id: str
    severity: Severity
    package: str = ""
    title: str = ""


class ServiceSpec(BaseModel):
    name: str
    component: Optional[str] = None     # backend / frontend / None (not built by the pipeline)
    health_url: str = ""
    image: Optional[ImageRef] = None
    ports: Dict[str, int] = {}
    environment: Dict[str, str] = {}


class Ack(BaseModel):
    target: str
    applied: Dict[str, str] = {}
    detail: str = ""


class DeploymentTarget(BaseModel):
    name: str
    services: Dict[str, ServiceSpec] = {}
    updated_at: Optional[datetime] = None

    def image_set(self) -> Dict[str, ImageRef]:
        """Current service -> ImageRef mapping (services without an image omitted)."""
        return {
            name: svc.image for name, svc in self.services.items() if svc.image is not None
        }

    def deployable_services(self) -> List[ServiceSpec]:
        return [svc for svc in self.services.values() if svc.component]

    def swap(self, mapping: Dict[str, ImageRef]) -> Dict[str, ImageRef]:
        """
        Replace the images of the named services in one assignment.

        Returns the image set that was being served before the swap.
        """
        unknown = set(mapping) - set(self.services)
        if unknown:
            raise KeyError(f"Unknown services for target {self.name}: {sorted(unknown)}")
        previous = self.image_set()
        services = {
            name: svc.model_copy(update={"image": mapping[name]}) if name in mapping else svc
            for name, svc in self.services.items()
        }
        self.services = services
        self.updated_at = datetime.now(timezone.utc)
        return previous


class TargetView(BaseModel):
    name: str
    images: Dict[str, Optional[str]] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @classmethod
    def of(cls, target: DeploymentTarget) -> "TargetView":
        return cls(
            name=target.name,
            images={
                name: (svc.image.reference if svc.image else None)
                for name, svc in target.services.items()
            },
            updated_at=target.updated_at,
        )
