from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from webhook_pipeline.common.database import Database
from webhook_pipeline.common.models import WebhookEnvelope, WebhookStatus, utcnow
from webhook_pipeline.common.schema import WebhookRecord

# Never persisted alongside the payload
_SENSITIVE_HEADERS = {"authorization", "cookie", "stripe-signature"}
_NOT_DEAD = WebhookRecord.status != WebhookStatus.DEAD.value


class WebhookRecordRepository:
    """Persistence for the per-provider-event idempotency and audit records."""

    def __init__(self, database: Database):
        self.database = database

    async def get(self, provider_event_id: str) -> Optional[WebhookRecord]:
        async with self.database.session() as session:
            result = await session.execute(
                select(WebhookRecord).where(WebhookRecord.provider_event_id == provider_event_id)
            )
            return result.scalar_one_or_none()

    async def create_if_absent(
        self,
        envelope: WebhookEnvelope,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        url: Optional[str] = None,
        max_retries: int = 5,
    ) -> Tuple[WebhookRecord, bool]:
        """Insert a ``received`` record, or return the existing one.

        The unique index on ``provider_event_id`` arbitrates concurrent
        deliveries: the loser of the race rolls back and reads the winner's row.
        """
        record = WebhookRecord(
            provider_event_id=envelope.id,
            event_type=envelope.type,
            status=WebhookStatus.RECEIVED.value,
            processed=False,
            retry_count=0,
            max_retries=max_retries,
            payload=payload,
            received_headers={
                k: v for k, v in (headers or {}).items() if k.lower() not in _SENSITIVE_HEADERS
            },
            url=url,
        )
        try:
            async with self.database.session() as session:
                async with session.begin():
                    session.add(record)
            return record, True
        except IntegrityError:
            logger.debug(f"Webhook record for {envelope.id} already exists")

        existing = await self.get(envelope.id)
        if existing is None:
            raise RuntimeError(f"Webhook record for {envelope.id} vanished after conflict")
        return existing, False

    async def _update(self, provider_event_id: str, *conditions: Any, **values: Any) -> int:
        values["updated_at"] = utcnow()
        async with self.database.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(WebhookRecord)
                    .where(WebhookRecord.provider_event_id == provider_event_id, *conditions)
                    .values(**values)
                )
        return result.rowcount

    async def mark_processing(self, provider_event_id: str) -> bool:
        """Move a live record to processing; dead records are left for replay."""
        updated = await self._update(
            provider_event_id, _NOT_DEAD, status=WebhookStatus.PROCESSING.value
        )
        return updated > 0

    async def mark_processed(self, provider_event_id: str) -> bool:
        updated = await self._update(
            provider_event_id,
            _NOT_DEAD,
            status=WebhookStatus.COMPLETED.value,
            processed=True,
            processed_at=utcnow(),
            next_retry_at=None,
        )
        return updated > 0

    async def mark_failed(
        self,
        provider_event_id: str,
        error: str,
        error_stack: Optional[str],
        retry_count: int,
        next_retry_at: datetime,
    ) -> None:
        await self._update(
            provider_event_id,
            status=WebhookStatus.RETRYING.value,
            error=error,
            error_stack=error_stack,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
        )

    async def mark_dead(
        self,
        provider_event_id: str,
        error: str,
        error_stack: Optional[str],
        retry_count: int,
    ) -> None:
        await self._update(
            provider_event_id,
            status=WebhookStatus.DEAD.value,
            processed=False,
            error=error,
            error_stack=error_stack,
            retry_count=retry_count,
            next_retry_at=None,
        )

    async def reset_for_replay(self, provider_event_id: str) -> None:
        await self._update(
            provider_event_id,
            status=WebhookStatus.RECEIVED.value,
            retry_count=0,
            next_retry_at=None,
        )

    async def list_dead(self, limit: int = 50, offset: int = 0) -> List[WebhookRecord]:
        """Records marked dead or out of attempts, oldest first."""
        async with self.database.session() as session:
            result = await session.execute(
                select(WebhookRecord)
                .where(
                    WebhookRecord.processed.is_(False),
                    or_(
                        WebhookRecord.status == WebhookStatus.DEAD.value,
                        WebhookRecord.retry_count >= WebhookRecord.max_retries,
                    ),
                )
                .order_by(WebhookRecord.created_at)
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def list_pending(self, stale_after: float, limit: int = 100) -> List[WebhookRecord]:
        """Unfinished records that are due for another attempt.

        Covers retrying records whose backoff has elapsed and received
        records whose job never made it onto (or was lost by) the broker.
        """
        now = utcnow()
        stale_before = now - timedelta(seconds=stale_after)
        async with self.database.session() as session:
            result = await session.execute(
                select(WebhookRecord)
                .where(
                    WebhookRecord.processed.is_(False),
                    or_(
                        and_(
                            WebhookRecord.status == WebhookStatus.RETRYING.value,
                            WebhookRecord.next_retry_at <= now,
                        ),
                        and_(
                            WebhookRecord.status.in_(
                                [WebhookStatus.RECEIVED.value, WebhookStatus.PROCESSING.value]
                            ),
                            WebhookRecord.updated_at <= stale_before,
                        ),
                    ),
                )
                .order_by(WebhookRecord.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())
