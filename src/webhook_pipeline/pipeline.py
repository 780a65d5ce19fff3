"""Composition root: builds every pipeline component from one config object."""

import asyncio
from typing import Any, Dict, Optional

from fastapi import Request
from loguru import logger

from webhook_pipeline.common.config import WorkerConfig
from webhook_pipeline.common.database import Database
from webhook_pipeline.common.models import WebhookJob
from webhook_pipeline.common.queue import QueueClient, create_queue_client
from webhook_pipeline.common.repositories import WebhookRecordRepository
from webhook_pipeline.events.audit import EventAuditLog
from webhook_pipeline.events.bus import EventBus
from webhook_pipeline.events.subscribers import (
    AnalyticsTracker,
    EmailSender,
    register_analytics_subscribers,
    register_email_subscribers,
    register_onboarding_subscribers,
)
from webhook_pipeline.worker.dispatcher import HandlerContext, TypeDispatcher
from webhook_pipeline.worker.handlers import HANDLERS
from webhook_pipeline.worker.runner import JobWorker


class Pipeline:
    def __init__(
        self,
        config: WorkerConfig,
        database: Database,
        queue_client: QueueClient,
        bus: EventBus,
        audit_log: EventAuditLog,
        records: WebhookRecordRepository,
        dispatcher: TypeDispatcher,
        worker: JobWorker,
    ):
        self.config = config
        self.database = database
        self.queue_client = queue_client
        self.bus = bus
        self.audit_log = audit_log
        self.records = records
        self.dispatcher = dispatcher
        self.worker = worker
        self.shutdown_event: Optional[asyncio.Event] = None
        self.started = False

    @classmethod
    def from_config(
        cls, config: WorkerConfig, queue_client: Optional[QueueClient] = None
    ) -> "Pipeline":
        config.validate_queue_config()

        database = Database(config.database)
        if queue_client is None:
            queue_client = create_queue_client(
                queue_type=config.queue_type,
                gcp_config=config.gcp_config,
                aws_config=config.aws_config,
                lease_timeout=config.retry.lease_timeout,
            )
        audit_log = EventAuditLog(database)
        bus = EventBus(audit_log, environment=config.environment)
        records = WebhookRecordRepository(database)
        dispatcher = TypeDispatcher(HANDLERS, HandlerContext(database, bus))
        worker = JobWorker(
            queue_client,
            records,
            dispatcher,
            bus,
            concurrency=config.concurrency,
            job_timeout=config.retry.job_timeout,
            backoff_base=config.retry.backoff_base,
            backoff_cap=config.retry.backoff_cap,
            max_attempts=config.retry.max_attempts,
            poll_interval=config.poll_interval,
            wait_seconds=config.wait_seconds,
            reconcile_interval=config.reconcile_interval,
            stale_after=config.stale_after,
        )
        return cls(config, database, queue_client, bus, audit_log, records, dispatcher, worker)

    def register_subscribers(
        self,
        tracker: Optional[AnalyticsTracker] = None,
        email_sender: Optional[EmailSender] = None,
    ) -> None:
        register_analytics_subscribers(self.bus, tracker)
        if self.config.email_enabled:
            register_email_subscribers(self.bus, email_sender)
        register_onboarding_subscribers(self.bus, self.database)

    def build_job(self, provider_event_id: str, event_type: str, payload: Dict[str, Any]) -> WebhookJob:
        return WebhookJob(
            dedupe_key=provider_event_id,
            event_type=event_type,
            payload=payload,
            max_attempts=self.config.retry.max_attempts,
            backoff_base=self.config.retry.backoff_base,
        )

    async def start(self, run_workers: bool = True) -> None:
        """Prepare storage, close the subscriber registry and optionally start consuming."""
        if self.config.database.create_tables:
            await self.database.create_tables()
        if not self.bus.frozen:
            self.bus.freeze()
        self.dispatcher.validate()

        if run_workers:
            self.shutdown_event = asyncio.Event()
            self.worker.start(self.shutdown_event)
        self.started = True
        logger.info("Webhook pipeline started")

    async def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        """Stop consumers, flush pending event deliveries and release resources."""
        timeout = self.config.drain_timeout if drain_timeout is None else drain_timeout
        await self.worker.stop(timeout)
        await self.bus.drain(timeout)
        await self.queue_client.close()
        await self.database.dispose()
        self.started = False
        logger.info("Webhook pipeline shut down")


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise RuntimeError("Pipeline not initialized")
    return pipeline
