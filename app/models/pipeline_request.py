"""
Pipeline Request Models
=======================
Inbound push notification (RawEvent) and the two possible outcomes of
Trigger Receiver validation: a PipelineRequest handed to the engine, or
a RejectedEvent that never starts a run.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field

from app.core.constants import DEFAULT_TARGET


@dataclass
class RawEvent:
    """Headers (any case) and undecoded body of one webhook delivery."""
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class PipelineRequest(BaseModel):
    delivery_id: str
    commit_ref: str
    branch: str
    repository_url: str = ""
    target: str = DEFAULT_TARGET
    pusher: str = ""
    message: str = ""
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RejectionReason(str, Enum):
    UNAUTHORIZED = "Unauthorized"
    INVALID = "Invalid"
    UNSUPPORTED = "Unsupported"
    DUPLICATE = "Duplicate"


class RejectedEvent(BaseModel):
    reason: RejectionReason
    message: str = ""
    delivery_id: Optional[str] = None
    run_id: Optional[str] = None
