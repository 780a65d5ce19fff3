"""In-process domain event bus.

Every published event is appended to the audit log and then delivered to
each subscriber in its own supervised task. A subscriber failure is logged
and counted; it never reaches the publisher or the other subscribers.
"""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from loguru import logger

from webhook_pipeline.common.event_types import DomainEventType
from webhook_pipeline.common.exceptions import RegistryFrozenError
from webhook_pipeline.common.metrics import metrics
from webhook_pipeline.common.models import DomainEvent

SubscriberHandler = Callable[[DomainEvent], Union[None, Awaitable[None]]]


@dataclass
class Subscriber:
    name: str
    handler: SubscriberHandler
    retries: int = 0
    retry_delay: float = 1.0


@dataclass
class SubscriberResult:
    subscriber: str
    ok: bool
    attempts: int
    error: Optional[str] = None


def _coerce_event_type(event_type: Union[str, DomainEventType]) -> DomainEventType:
    try:
        return DomainEventType(event_type)
    except ValueError:
        raise ValueError(f"Unknown domain event type: {event_type}") from None


class EventBus:
    def __init__(self, audit_log: Optional[Any] = None, environment: Optional[str] = None):
        self.audit_log = audit_log
        # Stamped on the metadata of events built by the publish helpers
        self.environment = environment
        self._subscribers: Dict[DomainEventType, List[Subscriber]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Close the registry; later ``subscribe`` calls raise."""
        self._frozen = True
        total = sum(len(subs) for subs in self._subscribers.values())
        logger.info(f"Event bus frozen with {total} subscriptions")

    def subscribe(
        self,
        event_type: Union[str, DomainEventType],
        handler: SubscriberHandler,
        name: Optional[str] = None,
        retries: int = 0,
        retry_delay: float = 1.0,
    ) -> Subscriber:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot subscribe to {event_type} after startup")
        event_type = _coerce_event_type(event_type)
        subscriber = Subscriber(
            name=name or getattr(handler, "__name__", repr(handler)),
            handler=handler,
            retries=retries,
            retry_delay=retry_delay,
        )
        self._subscribers[event_type].append(subscriber)
        logger.debug(f"Subscriber {subscriber.name} registered for {event_type.value}")
        return subscriber

    def subscribe_all(
        self,
        handler: SubscriberHandler,
        name: Optional[str] = None,
        retries: int = 0,
        retry_delay: float = 1.0,
    ) -> List[Subscriber]:
        return self.subscribe_many(DomainEventType, handler, name, retries, retry_delay)

    def subscribe_many(
        self,
        event_types: Iterable[Union[str, DomainEventType]],
        handler: SubscriberHandler,
        name: Optional[str] = None,
        retries: int = 0,
        retry_delay: float = 1.0,
    ) -> List[Subscriber]:
        return [
            self.subscribe(event_type, handler, name, retries, retry_delay)
            for event_type in event_types
        ]

    def subscribers(self, event_type: Union[str, DomainEventType]) -> List[Subscriber]:
        return list(self._subscribers.get(_coerce_event_type(event_type), []))

    def publish(self, event: DomainEvent) -> "asyncio.Task[List[SubscriberResult]]":
        """Schedule delivery of ``event`` and return without waiting for it.

        The returned task resolves to one ``SubscriberResult`` per subscriber.
        Must be called from a running event loop.
        """
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        metrics.domain_event_published_total.labels(event_type=event.event_type.value).inc()
        return task

    async def _deliver(self, event: DomainEvent) -> List[SubscriberResult]:
        log = logger.bind(event_id=event.event_id, event_type=event.event_type.value)

        if self.audit_log is not None:
            try:
                await self.audit_log.append(event)
            except Exception as e:
                log.error(f"Failed to store event {event.event_id} in audit log: {e}")

        subscribers = list(self._subscribers.get(event.event_type, []))
        tasks = [asyncio.create_task(self._run_subscriber(s, event)) for s in subscribers]
        results: List[SubscriberResult] = list(await asyncio.gather(*tasks)) if tasks else []

        if self.audit_log is not None:
            failures = [f"{r.subscriber}: {r.error}" for r in results if not r.ok]
            try:
                await self.audit_log.mark_delivered(event.event_id, failures)
            except Exception as e:
                log.error(f"Failed to record delivery of event {event.event_id}: {e}")

        return results

    async def _run_subscriber(self, subscriber: Subscriber, event: DomainEvent) -> SubscriberResult:
        log = logger.bind(
            event_id=event.event_id,
            event_type=event.event_type.value,
            subscriber=subscriber.name,
        )
        error: Optional[str] = None
        for attempt in range(1, subscriber.retries + 2):
            try:
                result = subscriber.handler(event)
                if inspect.isawaitable(result):
                    await result
                return SubscriberResult(subscriber=subscriber.name, ok=True, attempts=attempt)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                metrics.subscriber_errors_total.labels(subscriber=subscriber.name).inc()
                log.error(
                    f"Subscriber {subscriber.name} failed on event {event.event_id} "
                    f"(attempt {attempt}/{subscriber.retries + 1}): {error}"
                )
                if attempt <= subscriber.retries:
                    await asyncio.sleep(subscriber.retry_delay * (2 ** (attempt - 1)))
        return SubscriberResult(
            subscriber=subscriber.name,
            ok=False,
            attempts=subscriber.retries + 1,
            error=error,
        )

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for scheduled deliveries, including ones they publish.

        Returns False if deliveries were still pending when ``timeout`` ran out.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._pending:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning(f"{len(self._pending)} event deliveries still pending")
                return False
            await asyncio.wait(set(self._pending), timeout=remaining)
        return True
