from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from loguru import logger

from webhook_pipeline.common.database import Database
from webhook_pipeline.common.event_types import WebhookEventType
from webhook_pipeline.common.exceptions import ConfigurationError, EntityNotFoundError
from webhook_pipeline.common.models import DomainEvent
from webhook_pipeline.events.bus import EventBus


class DispatchOutcome(str, Enum):
    HANDLED = "handled"
    UNKNOWN_TYPE = "unknown_type"
    NOT_FOUND = "not_found"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    events: List[DomainEvent] = field(default_factory=list)


@dataclass
class HandlerContext:
    """What a webhook handler may touch besides its payload."""

    database: Database
    bus: EventBus
    provider_event_id: Optional[str] = None

    def publish(self, event: DomainEvent) -> DomainEvent:
        self.bus.publish(event)
        return event

    def for_event(self, provider_event_id: str) -> "HandlerContext":
        return HandlerContext(self.database, self.bus, provider_event_id)


WebhookHandler = Callable[[Dict[str, Any], HandlerContext], Awaitable[List[DomainEvent]]]


class TypeDispatcher:
    """Routes provider events to the handler registered for their type."""

    def __init__(self, handlers: Mapping[str, WebhookHandler], context: HandlerContext):
        self.handlers = dict(handlers)
        self.context = context

    def validate(self) -> None:
        """Fail fast unless handlers and ``WebhookEventType`` match one-to-one."""
        known = {t.value for t in WebhookEventType}
        registered = set(self.handlers)
        missing = known - registered
        extra = registered - known
        if missing:
            raise ConfigurationError(f"No handler registered for: {', '.join(sorted(missing))}")
        if extra:
            raise ConfigurationError(
                f"Handlers registered for unknown event types: {', '.join(sorted(extra))}"
            )
        logger.info(f"Dispatcher validated with {len(registered)} handlers")

    async def dispatch(
        self,
        event_type: str,
        payload: Dict[str, Any],
        provider_event_id: Optional[str] = None,
    ) -> DispatchResult:
        """Run the handler registered for ``event_type`` on the provider event.

        Unknown types and missing local entities are outcomes, not errors.
        Anything else a handler raises propagates to the caller for retry.
        """
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"No handler for event type {event_type}, acknowledging")
            return DispatchResult(DispatchOutcome.UNKNOWN_TYPE)

        context = self.context.for_event(provider_event_id or payload.get("id", ""))
        try:
            events = await handler(payload, context)
        except EntityNotFoundError as e:
            logger.warning(f"Skipping {event_type} {context.provider_event_id}: {e}")
            return DispatchResult(DispatchOutcome.NOT_FOUND)

        return DispatchResult(DispatchOutcome.HANDLED, events or [])
