import asyncio
import traceback
from datetime import timedelta
from typing import List, Optional

from loguru import logger

from webhook_pipeline.common.event_types import DomainEventType
from webhook_pipeline.common.exceptions import MalformedPayloadError
from webhook_pipeline.common.metrics import measure_time, metrics, notify_lifecycle
from webhook_pipeline.common.models import ActorType, WebhookJob, WebhookStatus, utcnow
from webhook_pipeline.common.queue import QueueClient, compute_backoff
from webhook_pipeline.common.repositories import WebhookRecordRepository
from webhook_pipeline.events.bus import EventBus
from webhook_pipeline.events.publisher import publish_system_event
from webhook_pipeline.worker.dispatcher import TypeDispatcher


class JobWorker:
    """Consumes webhook jobs and turns dispatch results into record states.

    ``process_job`` never raises for a handler failure: every claim ends in
    ``ack``, ``retry`` or ``dead_letter`` on the queue, mirrored on the
    webhook record.
    """

    def __init__(
        self,
        queue_client: QueueClient,
        records: WebhookRecordRepository,
        dispatcher: TypeDispatcher,
        bus: EventBus,
        concurrency: int = 5,
        job_timeout: float = 30.0,
        backoff_base: float = 60.0,
        backoff_cap: float = 21600.0,
        max_attempts: int = 5,
        poll_interval: float = 1.0,
        wait_seconds: float = 0,
        reconcile_interval: Optional[float] = None,
        stale_after: float = 600.0,
    ):
        self.queue_client = queue_client
        self.records = records
        self.dispatcher = dispatcher
        self.bus = bus
        self.concurrency = concurrency
        self.job_timeout = job_timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.wait_seconds = wait_seconds
        self.reconcile_interval = reconcile_interval
        self.stale_after = stale_after

        self._shutdown_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @measure_time(metrics.job_duration, lambda self, job: {"event_type": job.event_type})
    async def process_job(self, job: WebhookJob) -> str:
        """Run one claimed job to its next state and return that state."""
        key = job.dedupe_key
        log = logger.bind(dedupe_key=key, event_type=job.event_type)

        record = await self.records.get(key)
        if record is not None and record.processed:
            log.info(f"Job {key} already processed, acknowledging duplicate delivery")
            await self.queue_client.ack(job)
            return "duplicate"
        if record is not None and record.status == WebhookStatus.DEAD.value:
            log.warning(f"Job {key} is dead-lettered, not running it again until replayed")
            await self.queue_client.dead_letter(job)
            return "dead"
        if record is not None:
            # Brokers that cannot count deliveries still make progress towards dead
            job.attempts = max(job.attempts, record.retry_count + 1)

        await self.records.mark_processing(key)
        notify_lifecycle("started", key, job.event_type, attempt=job.attempts)

        try:
            result = await asyncio.wait_for(
                self.dispatcher.dispatch(job.event_type, job.payload, key),
                timeout=self.job_timeout,
            )
        except MalformedPayloadError as e:
            notify_lifecycle("failed", key, job.event_type, attempt=job.attempts, error=str(e))
            return await self._dead(job, f"MalformedPayloadError: {e}", traceback.format_exc())
        except asyncio.TimeoutError:
            return await self._fail(job, f"Job timed out after {self.job_timeout}s", None)
        except Exception as e:
            return await self._fail(job, f"{type(e).__name__}: {e}", traceback.format_exc())

        await self.records.mark_processed(key)
        await self.queue_client.ack(job)
        notify_lifecycle(
            "completed", key, job.event_type, attempt=job.attempts, outcome=result.outcome.value
        )
        return "completed"

    async def _fail(self, job: WebhookJob, error: str, error_stack: Optional[str]) -> str:
        notify_lifecycle("failed", job.dedupe_key, job.event_type, attempt=job.attempts, error=error)
        if job.attempts >= job.max_attempts:
            return await self._dead(job, error, error_stack)

        delay = compute_backoff(job.attempts, job.backoff_base, self.backoff_cap)
        await self.records.mark_failed(
            job.dedupe_key,
            error=error,
            error_stack=error_stack,
            retry_count=job.attempts,
            next_retry_at=utcnow() + timedelta(seconds=delay),
        )
        await self.queue_client.retry(job, delay)
        notify_lifecycle("retrying", job.dedupe_key, job.event_type, attempt=job.attempts, delay=delay)
        return "retrying"

    async def _dead(self, job: WebhookJob, error: str, error_stack: Optional[str]) -> str:
        await self.records.mark_dead(
            job.dedupe_key, error=error, error_stack=error_stack, retry_count=job.attempts
        )
        await self.queue_client.dead_letter(job)
        notify_lifecycle("dead", job.dedupe_key, job.event_type, attempt=job.attempts, error=error)
        publish_system_event(
            self.bus,
            DomainEventType.ONBOARDING_WEBHOOK_FAILED,
            {
                "provider_event_id": job.dedupe_key,
                "event_type": job.event_type,
                "attempts": job.attempts,
                "error": error,
            },
            actor_id="stripe-webhook",
            actor_type=ActorType.WEBHOOK,
            source="webhook-worker",
            correlation_id=job.dedupe_key,
        )
        return "dead"

    async def reconcile(self) -> int:
        """Re-enqueue records whose job is overdue or was never queued."""
        pending = await self.records.list_pending(self.stale_after)
        requeued = 0
        for record in pending:
            job = WebhookJob(
                dedupe_key=record.provider_event_id,
                event_type=record.event_type,
                payload=record.payload,
                attempts=record.retry_count,
                max_attempts=record.max_retries,
                backoff_base=self.backoff_base,
            )
            try:
                if await self.queue_client.enqueue(job):
                    requeued += 1
            except Exception as e:
                logger.error(f"Failed to re-enqueue job {record.provider_event_id}: {e}")
        if requeued:
            logger.info(f"Reconciliation re-enqueued {requeued} of {len(pending)} pending jobs")
        return requeued

    async def _wait(self, shutdown_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _release(self, job: WebhookJob) -> None:
        try:
            await self.queue_client.release(job)
            logger.info(f"Released in-flight job {job.dedupe_key} for another worker")
        except Exception as e:
            logger.error(f"Failed to release job {job.dedupe_key}: {e}")

    async def _consume(self, worker_id: int, shutdown_event: asyncio.Event) -> None:
        logger.debug(f"Consumer {worker_id} started")
        while not shutdown_event.is_set():
            try:
                job = await self.queue_client.receive(self.wait_seconds)
            except Exception as e:
                logger.error(f"Error receiving from queue: {e}")
                await self._wait(shutdown_event, self.poll_interval)
                continue

            if job is None:
                await self._wait(shutdown_event, self.poll_interval)
                continue

            try:
                await self.process_job(job)
            except asyncio.CancelledError:
                await self._release(job)
                raise
            except Exception as e:
                # The lease expires and the job is claimed again
                logger.error(f"Unexpected error processing job {job.dedupe_key}: {e}")
        logger.debug(f"Consumer {worker_id} stopped")

    async def _reconcile_loop(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await self.reconcile()
            except Exception as e:
                logger.error(f"Error during reconciliation: {e}")
            await self._wait(shutdown_event, self.reconcile_interval)

    def start(self, shutdown_event: asyncio.Event) -> List[asyncio.Task]:
        """Start consumer loops (and reconciliation) until ``shutdown_event`` is set."""
        self._shutdown_event = shutdown_event
        self._tasks = [
            asyncio.create_task(self._consume(i, shutdown_event)) for i in range(self.concurrency)
        ]
        if self.reconcile_interval:
            self._tasks.append(asyncio.create_task(self._reconcile_loop(shutdown_event)))
        logger.info(f"Job worker started with {self.concurrency} consumers")
        return self._tasks

    async def run(self, shutdown_event: asyncio.Event) -> None:
        await asyncio.gather(*self.start(shutdown_event))

    async def stop(self, timeout: float = 30.0) -> None:
        """Let in-flight jobs finish within ``timeout``; cancel and release the rest."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} consumers still running after {timeout}s")
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job worker stopped")
