from typing import List, Optional

from sqlalchemy import func, select, update

from webhook_pipeline.common.database import Database
from webhook_pipeline.common.models import (
    DomainEvent,
    Pagination,
    StoredEvent,
    TimelinePage,
    TimelineQuery,
    utcnow,
)
from webhook_pipeline.common.schema import DomainEventRecord


class EventAuditLog:
    """Append-only history of published domain events."""

    def __init__(self, database: Database):
        self.database = database

    async def append(self, event: DomainEvent) -> None:
        record = DomainEventRecord(
            event_id=event.event_id,
            event_type=event.event_type.value,
            event_version=event.event_version,
            actor_id=event.actor_id,
            actor_type=event.actor_type.value,
            organization_id=event.organization_id,
            payload=event.payload,
            event_metadata=event.metadata.model_dump(mode="json"),
            created_at=event.created_at,
        )
        async with self.database.session() as session:
            async with session.begin():
                session.add(record)

    async def mark_delivered(self, event_id: str, failures: List[str]) -> None:
        """Record the outcome of fanning an event out to its subscribers."""
        if failures:
            values = {
                "retry_count": DomainEventRecord.retry_count + 1,
                "last_error": "; ".join(failures),
            }
        else:
            values = {"processed": True, "processed_at": utcnow()}
        async with self.database.session() as session:
            async with session.begin():
                await session.execute(
                    update(DomainEventRecord)
                    .where(DomainEventRecord.event_id == event_id)
                    .values(**values)
                )

    async def get(self, event_id: str) -> Optional[StoredEvent]:
        async with self.database.session() as session:
            result = await session.execute(
                select(DomainEventRecord).where(DomainEventRecord.event_id == event_id)
            )
            record = result.scalar_one_or_none()
            return StoredEvent.model_validate(record) if record else None

    async def timeline(self, query: TimelineQuery) -> TimelinePage:
        conditions = []
        if query.actor_id:
            conditions.append(DomainEventRecord.actor_id == query.actor_id)
        if query.organization_id:
            conditions.append(DomainEventRecord.organization_id == query.organization_id)
        if query.event_types:
            conditions.append(DomainEventRecord.event_type.in_(query.event_types))

        async with self.database.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(DomainEventRecord).where(*conditions)
            )
            result = await session.execute(
                select(DomainEventRecord)
                .where(*conditions)
                .order_by(DomainEventRecord.created_at.desc(), DomainEventRecord.id.desc())
                .limit(query.limit)
                .offset(query.offset)
            )
            events = [StoredEvent.model_validate(r) for r in result.scalars().all()]

        total = total or 0
        return TimelinePage(
            events=events,
            pagination=Pagination(
                total=total,
                limit=query.limit,
                offset=query.offset,
                has_more=query.offset + query.limit < total,
            ),
        )

    async def list_undelivered(self, limit: int = 100) -> List[StoredEvent]:
        """Events that still have a failed subscriber, oldest first."""
        async with self.database.session() as session:
            result = await session.execute(
                select(DomainEventRecord)
                .where(DomainEventRecord.processed.is_(False))
                .order_by(DomainEventRecord.created_at, DomainEventRecord.id)
                .limit(limit)
            )
            return [StoredEvent.model_validate(r) for r in result.scalars().all()]
