from datetime import timedelta

import pytest

from webhook_pipeline.common.event_types import DomainEventType
from webhook_pipeline.common.models import (
    ActorType,
    DomainEvent,
    EventMetadata,
    TimelineQuery,
    utcnow,
)


async def seed_events(audit_log):
    """Store five events one minute apart, oldest first."""
    start = utcnow() - timedelta(hours=1)
    specs = [
        (DomainEventType.PRACTICE_CREATED, "user_1", "org_1"),
        (DomainEventType.PRACTICE_UPDATED, "user_1", "org_1"),
        (DomainEventType.ONBOARDING_COMPLETED, "org_1", "org_1"),
        (DomainEventType.PRACTICE_UPDATED, "user_2", "org_2"),
        (DomainEventType.AUTH_USER_LOGGED_IN, "user_1", None),
    ]
    events = []
    for i, (event_type, actor_id, organization_id) in enumerate(specs):
        event = DomainEvent(
            event_type=event_type,
            actor_id=actor_id,
            actor_type=ActorType.USER,
            organization_id=organization_id,
            payload={"sequence": i},
            metadata=EventMetadata(source="test"),
            created_at=start + timedelta(minutes=i),
        )
        await audit_log.append(event)
        events.append(event)
    return events


class TestEventAuditLogTimeline:

    @pytest.mark.asyncio
    async def test_newest_first(self, pipeline):
        await seed_events(pipeline.audit_log)

        page = await pipeline.audit_log.timeline(TimelineQuery())

        assert [e.payload["sequence"] for e in page.events] == [4, 3, 2, 1, 0]
        assert page.pagination.total == 5
        assert page.pagination.has_more is False

    @pytest.mark.asyncio
    async def test_filters_combine(self, pipeline):
        await seed_events(pipeline.audit_log)

        page = await pipeline.audit_log.timeline(
            TimelineQuery(
                organization_id="org_1",
                event_types=["practice.created", "practice.updated"],
            )
        )

        assert [e.payload["sequence"] for e in page.events] == [1, 0]

    @pytest.mark.asyncio
    async def test_pagination(self, pipeline):
        await seed_events(pipeline.audit_log)

        page = await pipeline.audit_log.timeline(TimelineQuery(limit=2, offset=2))

        assert [e.payload["sequence"] for e in page.events] == [2, 1]
        assert page.pagination.total == 5
        assert page.pagination.has_more is True


class TestTimelineRoute:

    @pytest.mark.asyncio
    async def test_timeline_by_actor(self, receiver_client, pipeline):
        await seed_events(pipeline.audit_log)

        response = await receiver_client.get("/events/timeline", params={"actor_id": "user_1"})

        assert response.status_code == 200
        data = response.json()
        assert [e["event_type"] for e in data["events"]] == [
            "auth.user_logged_in",
            "practice.updated",
            "practice.created",
        ]
        assert data["events"][0]["metadata"]["source"] == "test"
        assert data["pagination"] == {"total": 3, "limit": 50, "offset": 0, "has_more": False}

    @pytest.mark.asyncio
    async def test_timeline_repeated_event_types(self, receiver_client, pipeline):
        await seed_events(pipeline.audit_log)

        response = await receiver_client.get(
            "/events/timeline",
            params=[("event_types", "practice.updated"), ("event_types", "onboarding.completed")],
        )

        assert response.status_code == 200
        assert [e["payload"]["sequence"] for e in response.json()["events"]] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, receiver_client):
        response = await receiver_client.get(
            "/events/timeline", params={"event_types": "practice.exploded"}
        )

        assert response.status_code == 400
        assert "practice.exploded" in response.json()["detail"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}])
    async def test_invalid_paging(self, receiver_client, params):
        response = await receiver_client.get("/events/timeline", params=params)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_empty_timeline(self, receiver_client):
        response = await receiver_client.get("/events/timeline")

        assert response.status_code == 200
        assert response.json()["events"] == []
        assert response.json()["pagination"]["total"] == 0


class TestUndelivered:

    @pytest.mark.asyncio
    async def test_lists_unprocessed_oldest_first(self, pipeline):
        events = await seed_events(pipeline.audit_log)
        await pipeline.audit_log.mark_delivered(events[1].event_id, [])
        await pipeline.audit_log.mark_delivered(events[3].event_id, ["sync: RuntimeError: boom"])

        undelivered = await pipeline.audit_log.list_undelivered()

        assert [e.payload["sequence"] for e in undelivered] == [0, 2, 3, 4]
        assert undelivered[2].last_error == "sync: RuntimeError: boom"
        assert len(await pipeline.audit_log.list_undelivered(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_undelivered_route(self, receiver_client, pipeline):
        events = await seed_events(pipeline.audit_log)
        for event in events[:4]:
            await pipeline.audit_log.mark_delivered(event.event_id, [])

        response = await receiver_client.get("/events/undelivered")

        assert response.status_code == 200
        data = response.json()
        assert [e["event_id"] for e in data] == [events[4].event_id]
        assert data[0]["processed"] is False

    @pytest.mark.asyncio
    async def test_undelivered_invalid_limit(self, receiver_client):
        response = await receiver_client.get("/events/undelivered", params={"limit": 0})
        assert response.status_code == 422
