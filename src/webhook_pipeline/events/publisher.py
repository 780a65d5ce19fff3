import asyncio
from typing import Any, Dict, Mapping, Optional, Union

from webhook_pipeline.common.event_types import DomainEventType
from webhook_pipeline.common.models import ActorType, DomainEvent, EventMetadata
from webhook_pipeline.events.bus import EventBus

EventTypeLike = Union[str, DomainEventType]


def create_event_metadata(
    source: str,
    headers: Optional[Mapping[str, str]] = None,
    ip_address: Optional[str] = None,
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    environment: Optional[str] = None,
) -> EventMetadata:
    """Build event metadata from whatever request context is available."""
    headers = {k.lower(): v for k, v in (headers or {}).items()}
    return EventMetadata(
        source=source,
        ip_address=ip_address,
        user_agent=headers.get("user-agent"),
        request_id=request_id or headers.get("x-request-id"),
        correlation_id=correlation_id,
        environment=environment,
    )


def publish_system_event(
    bus: EventBus,
    event_type: EventTypeLike,
    payload: Dict[str, Any],
    actor_id: Optional[str] = None,
    actor_type: ActorType = ActorType.SYSTEM,
    organization_id: Optional[str] = None,
    source: str = "system",
    correlation_id: Optional[str] = None,
) -> asyncio.Task:
    event = DomainEvent(
        event_type=DomainEventType(event_type),
        actor_id=actor_id,
        actor_type=actor_type,
        organization_id=organization_id,
        payload=payload,
        metadata=create_event_metadata(
            source, correlation_id=correlation_id, environment=bus.environment
        ),
    )
    return bus.publish(event)


def publish_user_event(
    bus: EventBus,
    event_type: EventTypeLike,
    actor_id: str,
    payload: Dict[str, Any],
    headers: Optional[Mapping[str, str]] = None,
) -> asyncio.Task:
    event = DomainEvent(
        event_type=DomainEventType(event_type),
        actor_id=actor_id,
        actor_type=ActorType.USER,
        payload=payload,
        metadata=create_event_metadata("api", headers=headers, environment=bus.environment),
    )
    return bus.publish(event)


def publish_practice_event(
    bus: EventBus,
    event_type: EventTypeLike,
    actor_id: str,
    organization_id: str,
    payload: Dict[str, Any],
    headers: Optional[Mapping[str, str]] = None,
) -> asyncio.Task:
    event = DomainEvent(
        event_type=DomainEventType(event_type),
        actor_id=actor_id,
        actor_type=ActorType.USER,
        organization_id=organization_id,
        payload=payload,
        metadata=create_event_metadata("api", headers=headers, environment=bus.environment),
    )
    return bus.publish(event)


def publish_event(
    bus: EventBus,
    event_type: EventTypeLike,
    payload: Dict[str, Any],
    actor_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> asyncio.Task:
    """Publish through the helper that matches the event's domain.

    Practice and settings events need an organization, user and auth events
    an actor; anything else, or a call missing those, goes out as a system
    event.
    """
    domain = DomainEventType(event_type).value.split(".", 1)[0]
    if domain in ("practice", "settings") and actor_id and organization_id:
        return publish_practice_event(bus, event_type, actor_id, organization_id, payload, headers)
    if domain in ("auth", "user") and actor_id:
        return publish_user_event(bus, event_type, actor_id, payload, headers)
    return publish_system_event(
        bus, event_type, payload, actor_id=actor_id, organization_id=organization_id
    )
