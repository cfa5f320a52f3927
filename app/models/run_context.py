"""
Run Context
Per-run working state passed by reference from the engine to every stage
operation. Never shared between runs.
"""
from dataclasses import dataclass, field
from typing import Dict

from app.models.deployment import DeploymentTarget, ImageRef


@dataclass
class RunContext:
    run_id: str
    commit_ref: str
    repository_url: str
    target: DeploymentTarget
    context_ref: str = ""                                        # checked-out build context
    images: Dict[str, ImageRef] = field(default_factory=dict)    # component -> canonical ImageRef
    previous_images: Dict[str, ImageRef] = field(default_factory=dict)
    apply_issued: bool = False                                   # runtime apply started, outcome unknown
    deployed: bool = False                                       # apply acknowledged and target swapped

    @property
    def target_touched(self) -> bool:
        """True once the environment may differ from the last recorded image set."""
        return self.deployed or self.apply_issued
