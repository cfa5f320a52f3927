"""
Trigger Receiver
================
Validates and normalizes an inbound push notification into a
PipelineRequest, or rejects it.

Order of checks (first failure wins):
    1. Signature      — HMAC of the raw body with the shared secret.
                        Mismatch → Unauthorized (never retried, never starts a run).
    2. Event type     — only "push" events are considered → else Unsupported.
    3. Payload        — JSON object with ref / after and a delivery-id
                        header → else Invalid.
    4. Branch         — deletions, tags and non-deployment branches →
                        Unsupported (a no-op, not an error).
    5. Dedup window   — delivery-id seen before → Duplicate (with the
                        original run id once it is bound).

The receiver never talks to the engine; the PipelineService hands accepted
requests to the scheduler and binds the created run id back here.
"""
import json
import logging
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as ModelValidationError

from app.core.config import DEPLOY_BRANCH, WEBHOOK_SECRET
from app.core.constants import (
    BRANCH_REF_PREFIX,
    DEFAULT_TARGET,
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    ZERO_SHA,
)
from app.core.errors import AuthenticationError, ValidationError
from app.models.pipeline_request import (
    PipelineRequest,
    RawEvent,
    RejectedEvent,
    RejectionReason,
)
from app.receiver.signature import verify_signature
from app.services.delivery_cache import DeliveryCache

logger = logging.getLogger(__name__)

ReceiveResult = Union[PipelineRequest, RejectedEvent]


def _text(section: Any, key: str) -> str:
    """String value of an optional nested payload field; null or absent is ""."""
    if not isinstance(section, dict):
        return ""
    value = section.get(key)
    return "" if value is None else str(value)


def _parse_payload(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Payload is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")
    ref = payload.get("ref")
    after = payload.get("after")
    if not isinstance(ref, str) or not ref:
        raise ValidationError("Payload is missing 'ref'")
    if not isinstance(after, str) or not after:
        raise ValidationError("Payload is missing 'after'")
    return payload


class TriggerReceiver:
    """Signature check, payload normalization and delivery dedup."""

    def __init__(
        self,
        secret: str = WEBHOOK_SECRET,
        deploy_branch: str = DEPLOY_BRANCH,
        target: str = DEFAULT_TARGET,
        dedup: Optional[DeliveryCache] = None,
    ) -> None:
        self.secret = secret
        self.deploy_branch = deploy_branch
        self.target = target
        self.dedup = dedup if dedup is not None else DeliveryCache()

    def authenticate(self, event: RawEvent) -> None:
        if not verify_signature(self.secret, event.body, event.header(SIGNATURE_HEADER)):
            raise AuthenticationError("Webhook signature mismatch")

    def parse(self, event: RawEvent) -> ReceiveResult:
        delivery_id = (event.header(DELIVERY_HEADER) or "").strip()
        event_type = (event.header(EVENT_HEADER) or "push").strip().lower()
        if event_type != "push":
            return RejectedEvent(
                reason=RejectionReason.UNSUPPORTED,
                message=f"Event type '{event_type}' does not trigger a run",
                delivery_id=delivery_id or None,
            )
        if not delivery_id:
            raise ValidationError(f"Missing {DELIVERY_HEADER} header")

        payload = _parse_payload(event.body)
        ref: str = payload["ref"]
        commit_ref: str = payload["after"]

        if not ref.startswith(BRANCH_REF_PREFIX):
            return RejectedEvent(
                reason=RejectionReason.UNSUPPORTED,
                message=f"Ref '{ref}' is not a branch",
                delivery_id=delivery_id,
            )
        branch = ref[len(BRANCH_REF_PREFIX):]
        if payload.get("deleted") or commit_ref == ZERO_SHA:
            return RejectedEvent(
                reason=RejectionReason.UNSUPPORTED,
                message=f"Branch '{branch}' was deleted",
                delivery_id=delivery_id,
            )
        if branch != self.deploy_branch:
            return RejectedEvent(
                reason=RejectionReason.UNSUPPORTED,
                message=f"Branch '{branch}' is not the deployment branch '{self.deploy_branch}'",
                delivery_id=delivery_id,
            )

        try:
            return PipelineRequest(
                delivery_id=delivery_id,
                commit_ref=commit_ref,
                branch=branch,
                repository_url=_text(payload.get("repository"), "clone_url"),
                target=self.target,
                pusher=_text(payload.get("pusher"), "name"),
                message=_text(payload.get("head_commit"), "message")[:200],
            )
        except ModelValidationError as e:
            raise ValidationError(f"Payload rejected: {e.error_count()} invalid field(s)")

    def receive(self, event: RawEvent) -> ReceiveResult:
        """
        Validate one delivery.

        Returns
        -------
        PipelineRequest
            Accepted: the delivery-id is now claimed in the dedup window.
        RejectedEvent
            Unauthorized / Invalid / Unsupported / Duplicate. No run must be created.
        """
        try:
            self.authenticate(event)
            result = self.parse(event)
        except AuthenticationError as e:
            logger.warning("Rejected delivery: %s", e.message)
            return RejectedEvent(
                reason=RejectionReason.UNAUTHORIZED,
                message=e.message,
                delivery_id=event.header(DELIVERY_HEADER),
            )
        except ValidationError as e:
            logger.warning("Rejected malformed delivery: %s", e.message)
            return RejectedEvent(
                reason=RejectionReason.INVALID,
                message=e.message,
                delivery_id=event.header(DELIVERY_HEADER),
            )

        if isinstance(result, RejectedEvent):
            logger.info("Ignoring delivery %s: %s", result.delivery_id, result.message)
            return result

        if not self.dedup.claim(result.delivery_id):
            return RejectedEvent(
                reason=RejectionReason.DUPLICATE,
                message="Delivery already received",
                delivery_id=result.delivery_id,
                run_id=self.dedup.run_id_for(result.delivery_id),
            )

        logger.info(
            "Accepted delivery %s: %s@%s", result.delivery_id, result.branch, result.commit_ref[:12]
        )
        return result

    def bind_run(self, delivery_id: str, run_id: str) -> None:
        self.dedup.bind(delivery_id, run_id)

    def release(self, delivery_id: str) -> None:
        self.dedup.release(delivery_id)
