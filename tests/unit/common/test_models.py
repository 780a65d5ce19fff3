import json

import pytest
from pydantic import ValidationError

from webhook_pipeline.common.event_types import (
    DomainEventType,
    WebhookEventType,
    event_types_for_domain,
    is_valid_event_type,
)
from webhook_pipeline.common.models import (
    ActorType,
    DomainEvent,
    EventMetadata,
    TimelineQuery,
    WebhookEnvelope,
    WebhookJob,
)


class TestWebhookEnvelope:

    def test_keeps_extra_fields(self):
        """Test that the envelope accepts the full provider event."""
        envelope = WebhookEnvelope.model_validate(
            {"id": "evt_1", "type": "account.updated", "data": {"object": {"id": "acct_1"}}}
        )
        assert envelope.id == "evt_1"
        assert envelope.type == "account.updated"
        assert envelope.livemode is False

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "account.updated"},
            {"id": "evt_1"},
            {"id": "", "type": "account.updated"},
        ],
    )
    def test_requires_id_and_type(self, payload):
        """Test that events without an id or a type are rejected."""
        with pytest.raises(ValidationError):
            WebhookEnvelope.model_validate(payload)


class TestWebhookJob:

    def test_wire_format(self):
        """Test the serialized job carries identity, payload and attempt bookkeeping."""
        job = WebhookJob(
            dedupe_key="evt_1",
            event_type="account.updated",
            payload={"id": "evt_1"},
        )
        wire = json.loads(job.model_dump_json())
        assert wire["dedupe_key"] == "evt_1"
        assert wire["event_type"] == "account.updated"
        assert wire["payload"] == {"id": "evt_1"}
        assert wire["attempts"] == 0
        assert wire["max_attempts"] == 5
        assert "_receipt" not in wire

    def test_receipt_is_private(self):
        """Test that the broker claim handle never leaves the process."""
        job = WebhookJob(dedupe_key="evt_1", event_type="account.updated", payload={})
        job._receipt = "receipt-handle"
        restored = WebhookJob.model_validate_json(job.model_dump_json())
        assert restored._receipt is None


class TestDomainEvent:

    def test_defaults(self):
        """Test generated ids and default version and actor."""
        event = DomainEvent(
            event_type=DomainEventType.PRACTICE_UPDATED,
            metadata=EventMetadata(source="system"),
        )
        assert len(event.event_id) == 36
        assert event.event_version == "1.0.0"
        assert event.actor_type == ActorType.SYSTEM
        assert event.payload == {}

    def test_is_frozen(self):
        """Test that published events cannot be mutated."""
        event = DomainEvent(
            event_type="practice.updated",
            metadata=EventMetadata(source="system"),
        )
        with pytest.raises(ValidationError):
            event.organization_id = "org_1"

    def test_rejects_unknown_type(self):
        """Test that event types outside the closed set are rejected."""
        with pytest.raises(ValidationError):
            DomainEvent(event_type="practice.exploded", metadata=EventMetadata(source="system"))


class TestTimelineQuery:

    def test_limit_bounds(self):
        """Test that the page size is between 1 and 100."""
        assert TimelineQuery().limit == 50
        with pytest.raises(ValidationError):
            TimelineQuery(limit=0)
        with pytest.raises(ValidationError):
            TimelineQuery(limit=101)
        with pytest.raises(ValidationError):
            TimelineQuery(offset=-1)


class TestEventTypes:

    def test_is_valid_event_type(self):
        assert is_valid_event_type("onboarding.completed")
        assert not is_valid_event_type("account.updated")

    def test_event_types_for_domain(self):
        auth_types = event_types_for_domain("auth")
        assert DomainEventType.AUTH_USER_SIGNED_UP in auth_types
        assert all(t.value.startswith("auth.") for t in auth_types)

    def test_webhook_event_types(self):
        assert {t.value for t in WebhookEventType} == {
            "account.updated",
            "capability.updated",
            "account.external_account.created",
            "account.external_account.updated",
            "account.external_account.deleted",
        }
