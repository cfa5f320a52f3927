"""
Trigger Receiver Tests
======================
Signature verification, payload validation, branch filtering and
delivery-id deduplication.
"""
import json

from app.models.pipeline_request import PipelineRequest, RawEvent, RejectedEvent, RejectionReason
from app.receiver.signature import sign_payload, verify_signature
from app.receiver.trigger_receiver import TriggerReceiver
from app.services.delivery_cache import DeliveryCache

SECRET = "s3cret"
COMMIT = "9b1c0d2e3f4a5b6c7d8e9f00112233445566778a"


def _payload(ref="refs/heads/main", after=COMMIT, **extra):
    body = {
        "ref": ref,
        "after": after,
        "repository": {"clone_url": "https://git.example.com/team/app.git"},
        "pusher": {"name": "dev"},
        "head_commit": {"message": "Fix login redirect"},
    }
    body.update(extra)
    return json.dumps(body).encode()


def _event(body, delivery="d-1", event="push", secret=SECRET, signature=None):
    headers = {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
        "X-Hub-Signature-256": signature if signature is not None else sign_payload(secret, body),
    }
    return RawEvent(headers=headers, body=body)


def _receiver():
    return TriggerReceiver(secret=SECRET, deploy_branch="main", target="staging", dedup=DeliveryCache())


# ---------------------------------------------------------------------------
# Signature helpers
# ---------------------------------------------------------------------------
def test_signature_roundtrip_and_tamper():
    body = b'{"ref": "refs/heads/main"}'
    header = sign_payload(SECRET, body)
    assert header.startswith("sha256=")
    assert verify_signature(SECRET, body, header)
    assert not verify_signature(SECRET, body + b" ", header)
    assert not verify_signature("other", body, header)


def test_empty_secret_never_validates():
    body = b"{}"
    assert not verify_signature("", body, sign_payload("", body))
    assert not verify_signature(SECRET, body, None)


# ---------------------------------------------------------------------------
# Accept
# ---------------------------------------------------------------------------
def test_valid_push_is_accepted():
    result = _receiver().receive(_event(_payload()))

    assert isinstance(result, PipelineRequest)
    assert result.commit_ref == COMMIT
    assert result.branch == "main"
    assert result.delivery_id == "d-1"
    assert result.target == "staging"
    assert result.repository_url == "https://git.example.com/team/app.git"
    assert result.message == "Fix login redirect"


def test_null_optional_fields_are_accepted_as_empty():
    body = _payload(repository={"clone_url": None}, head_commit=None, pusher={"name": None})
    result = _receiver().receive(_event(body))

    assert isinstance(result, PipelineRequest)
    assert result.repository_url == ""
    assert result.pusher == ""
    assert result.message == ""


def test_non_string_optional_fields_are_coerced():
    body = _payload(pusher={"name": 42}, head_commit={"message": ["wip"]})
    result = _receiver().receive(_event(body))

    assert isinstance(result, PipelineRequest)
    assert result.pusher == "42"
    assert result.message == "['wip']"


def test_headers_are_case_insensitive():
    body = _payload()
    event = RawEvent(
        headers={
            "x-github-event": "push",
            "x-github-delivery": "d-lower",
            "x-hub-signature-256": sign_payload(SECRET, body),
        },
        body=body,
    )
    assert isinstance(_receiver().receive(event), PipelineRequest)


# ---------------------------------------------------------------------------
# Reject
# ---------------------------------------------------------------------------
def test_bad_signature_is_unauthorized():
    result = _receiver().receive(_event(_payload(), signature="sha256=deadbeef"))

    assert isinstance(result, RejectedEvent)
    assert result.reason is RejectionReason.UNAUTHORIZED


def test_signature_checked_before_payload():
    result = _receiver().receive(_event(b"not json", signature="sha256=00"))
    assert result.reason is RejectionReason.UNAUTHORIZED


def test_unparseable_body_is_invalid():
    result = _receiver().receive(_event(b"{not json"))
    assert result.reason is RejectionReason.INVALID


def test_missing_commit_is_invalid():
    body = json.dumps({"ref": "refs/heads/main"}).encode()
    result = _receiver().receive(_event(body))
    assert result.reason is RejectionReason.INVALID
    assert "after" in result.message


def test_missing_delivery_header_is_invalid():
    result = _receiver().receive(_event(_payload(), delivery=""))
    assert result.reason is RejectionReason.INVALID


def test_other_branch_is_unsupported():
    result = _receiver().receive(_event(_payload(ref="refs/heads/feature/login")))
    assert result.reason is RejectionReason.UNSUPPORTED


def test_tag_push_is_unsupported():
    result = _receiver().receive(_event(_payload(ref="refs/tags/v1.0.0")))
    assert result.reason is RejectionReason.UNSUPPORTED


def test_branch_deletion_is_unsupported():
    result = _receiver().receive(_event(_payload(after="0" * 40, deleted=True)))
    assert result.reason is RejectionReason.UNSUPPORTED


def test_non_push_event_is_unsupported():
    result = _receiver().receive(_event(_payload(), event="ping"))
    assert result.reason is RejectionReason.UNSUPPORTED


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------
def test_redelivery_is_duplicate_with_original_run():
    receiver = _receiver()
    first = receiver.receive(_event(_payload()))
    receiver.bind_run(first.delivery_id, "run-abc")

    second = receiver.receive(_event(_payload()))
    assert second.reason is RejectionReason.DUPLICATE
    assert second.run_id == "run-abc"


def test_rejected_delivery_does_not_claim_dedup_slot():
    receiver = _receiver()
    receiver.receive(_event(_payload(), signature="sha256=bad"))
    assert isinstance(receiver.receive(_event(_payload())), PipelineRequest)


def test_released_delivery_can_be_retried():
    receiver = _receiver()
    receiver.receive(_event(_payload()))
    receiver.release("d-1")
    assert isinstance(receiver.receive(_event(_payload())), PipelineRequest)


def test_same_commit_with_new_delivery_starts_new_run():
    receiver = _receiver()
    assert isinstance(receiver.receive(_event(_payload(), delivery="d-1")), PipelineRequest)
    assert isinstance(receiver.receive(_event(_payload(), delivery="d-2")), PipelineRequest)
