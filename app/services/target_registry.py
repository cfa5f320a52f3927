"""
Target Registry
===============
Holds the DeploymentTargets created at system setup.

Targets are read from TARGETS_FILE (YAML) when configured:

    targets:
      staging:
        services:
          backend:
            component: backend
            health_url: http://localhost:8000/health
            ports: {"8000/tcp": 8000}
          frontend:
            component: frontend
            health_url: http://localhost:3000/
          db:
            image: postgres:16          # not built by the pipeline

Otherwise a single "staging" target with backend + frontend services is used.

Each DeploymentTarget object is the single shared mutable state of the
pipeline; only the deploy stage (serialized per target by the scheduler)
mutates it.
"""
import logging
from typing import Any, Dict, List, Optional

import yaml

from app.core.config import TARGETS_FILE
from app.core.constants import BACKEND, DEFAULT_TARGET, FRONTEND
from app.models.deployment import DeploymentTarget, ImageRef, ServiceSpec, TargetView

logger = logging.getLogger(__name__)


def _service_from_config(name: str, raw: Dict[str, Any]) -> ServiceSpec:
    image = None
    if raw.get("image"):
        repository, sep, tag = str(raw["image"]).rpartition(":")
        image = ImageRef(repository=repository, tag=tag) if sep else ImageRef(repository=tag, tag="latest")
    return ServiceSpec(
        name=name,
        component=raw.get("component"),
        health_url=raw.get("health_url", ""),
        image=image,
        ports={str(k): int(v) for k, v in (raw.get("ports") or {}).items()},
        environment={str(k): str(v) for k, v in (raw.get("environment") or {}).items()},
    )


def parse_targets(document: Dict[str, Any]) -> List[DeploymentTarget]:
    targets: List[DeploymentTarget] = []
    for target_name, target_raw in (document.get("targets") or {}).items():
        services = {
            name: _service_from_config(name, raw or {})
            for name, raw in ((target_raw or {}).get("services") or {}).items()
        }
        targets.append(DeploymentTarget(name=target_name, services=services))
    return targets


def default_targets() -> List[DeploymentTarget]:
    return [DeploymentTarget(
        name=DEFAULT_TARGET,
        services={
            BACKEND: ServiceSpec(
                name=BACKEND, component=BACKEND,
                health_url="http://localhost:8000/health", ports={"8000/tcp": 8000},
            ),
            FRONTEND: ServiceSpec(
                name=FRONTEND, component=FRONTEND,
                health_url="http://localhost:3000/", ports={"80/tcp": 3000},
            ),
        },
    )]


class TargetRegistry:
    def __init__(self, targets: Optional[List[DeploymentTarget]] = None) -> None:
        self._targets: Dict[str, DeploymentTarget] = {
            t.name: t for t in (targets if targets is not None else default_targets())
        }

    @classmethod
    def from_file(cls, path: str = TARGETS_FILE) -> "TargetRegistry":
        if not path:
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}
        targets = parse_targets(document)
        logger.info("Loaded %d deployment target(s) from %s", len(targets), path)
        return cls(targets)

    def get(self, name: str) -> DeploymentTarget:
        try:
            return self._targets[name]
        except KeyError:
            raise KeyError(f"Unknown deployment target: {name}")

    def names(self) -> List[str]:
        return list(self._targets)

    def views(self) -> List[TargetView]:
        return [TargetView.of(t) for t in self._targets.values()]
