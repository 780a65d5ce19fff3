import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from conftest import create_connected_account, make_stripe_event, sign_payload
from webhook_pipeline.common.config import QueueType
from webhook_pipeline.common.exceptions import ConfigurationError, RegistryFrozenError
from webhook_pipeline.common.models import WebhookStatus
from webhook_pipeline.common.queue import InMemoryQueueClient
from webhook_pipeline.common.schema import ConnectedAccount, WebhookRecord
from webhook_pipeline.pipeline import Pipeline


class TestPipeline:

    def test_from_config_builds_memory_queue(self, receiver_config):
        pipeline = Pipeline.from_config(receiver_config)

        assert isinstance(pipeline.queue_client, InMemoryQueueClient)
        assert pipeline.queue_client.lease_timeout == receiver_config.retry.lease_timeout
        assert pipeline.worker.max_attempts == 5
        assert pipeline.bus.audit_log is pipeline.audit_log
        assert pipeline.bus.environment == receiver_config.environment

    def test_from_config_rejects_missing_broker_config(self, receiver_config):
        config = receiver_config.model_copy(update={"queue_type": QueueType.AWS_SQS})

        with pytest.raises(ValueError, match="AWS SQS selected"):
            Pipeline.from_config(config)

    def test_build_job(self, pipeline):
        job = pipeline.build_job("evt_1", "account.updated", {"id": "evt_1"})

        assert job.dedupe_key == "evt_1"
        assert job.attempts == 0
        assert job.max_attempts == 5
        assert job.backoff_base == 60.0

    def test_register_subscribers(self, pipeline):
        pipeline.register_subscribers()

        names = [s.name for s in pipeline.bus.subscribers("onboarding.account_updated")]
        assert "onboarding.complete_onboarding" in names
        assert "analytics.track_event" in names
        # Email is off unless configured
        assert "email.welcome" not in [s.name for s in pipeline.bus.subscribers("auth.user_signed_up")]

    def test_register_email_subscribers_when_enabled(self, receiver_config, queue_client):
        config = receiver_config.model_copy(update={"email_enabled": True})
        pipeline = Pipeline.from_config(config, queue_client=queue_client)

        pipeline.register_subscribers()

        names = [s.name for s in pipeline.bus.subscribers("auth.user_signed_up")]
        assert "email.welcome" in names

    @pytest.mark.asyncio
    async def test_start_freezes_registry(self, pipeline):
        await pipeline.start(run_workers=False)

        assert pipeline.started is True
        with pytest.raises(RegistryFrozenError):
            pipeline.bus.subscribe("practice.updated", lambda e: None)

    @pytest.mark.asyncio
    async def test_start_fails_on_incomplete_handlers(self, pipeline):
        del pipeline.dispatcher.handlers["account.external_account.deleted"]

        with pytest.raises(ConfigurationError):
            await pipeline.start(run_workers=False)

    @pytest.mark.asyncio
    async def test_start_and_shutdown_workers(self, pipeline):
        await pipeline.start(run_workers=True)
        assert len(pipeline.worker._tasks) == pipeline.config.concurrency

        await pipeline.shutdown(drain_timeout=5.0)

        assert pipeline.worker._tasks == []
        assert pipeline.started is False


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_redelivered_event_is_processed_once(self, receiver_client, pipeline):
        """Test that the same provider event delivered twice yields one completed record."""
        await create_connected_account(pipeline.database)
        handler = AsyncMock(wraps=pipeline.dispatcher.handlers["account.updated"])
        pipeline.dispatcher.handlers["account.updated"] = handler
        body, headers = sign_payload(
            make_stripe_event("account.updated", {"id": "acct_1", "charges_enabled": True})
        )

        first = await receiver_client.post("/webhooks/stripe", content=body, headers=headers)
        await asyncio.sleep(0.05)
        second = await receiver_client.post("/webhooks/stripe", content=body, headers=headers)

        assert first.json() == {"received": True, "job_id": "evt_123"}
        assert second.json() == {"received": True, "duplicate": True}

        job = await pipeline.queue_client.receive()
        assert await pipeline.worker.process_job(job) == "completed"
        assert await pipeline.queue_client.receive() is None

        # A delivery after completion is acknowledged without a new job
        third = await receiver_client.post("/webhooks/stripe", content=body, headers=headers)
        assert third.json() == {"received": True, "already_processed": True}

        assert handler.await_count == 1
        async with pipeline.database.session() as session:
            count = await session.scalar(select(func.count()).select_from(WebhookRecord))
        assert count == 1
        record = await pipeline.records.get("evt_123")
        assert record.status == WebhookStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_onboarding_completes_from_webhook(self, receiver_client, pipeline):
        """Test a fully enabled account flowing from webhook to practice update."""
        await create_connected_account(pipeline.database)
        pipeline.register_subscribers()
        await pipeline.start(run_workers=False)
        body, headers = sign_payload(
            make_stripe_event(
                "account.updated",
                {
                    "id": "acct_1",
                    "charges_enabled": True,
                    "payouts_enabled": True,
                    "details_submitted": True,
                },
            )
        )

        await receiver_client.post("/webhooks/stripe", content=body, headers=headers)
        await pipeline.worker.process_job(await pipeline.queue_client.receive())
        assert await pipeline.bus.drain(timeout=5.0)

        response = await receiver_client.get(
            "/events/timeline", params={"organization_id": "org_1"}
        )
        event_types = [e["event_type"] for e in response.json()["events"]]
        assert "onboarding.account_updated" in event_types
        assert "onboarding.completed" in event_types
        assert "practice.updated" in event_types

    @pytest.mark.asyncio
    async def test_failing_subscriber_keeps_handler_update(self, receiver_client, pipeline):
        """Test that a subscriber raising after the handler committed changes nothing upstream."""
        await create_connected_account(pipeline.database)

        def broken(event):
            raise RuntimeError("downstream unavailable")

        pipeline.bus.subscribe("onboarding.account_updated", broken, name="broken")
        body, headers = sign_payload(
            make_stripe_event("account.updated", {"id": "acct_1", "charges_enabled": True})
        )

        await receiver_client.post("/webhooks/stripe", content=body, headers=headers)
        outcome = await pipeline.worker.process_job(await pipeline.queue_client.receive())
        assert await pipeline.bus.drain(timeout=5.0)

        assert outcome == "completed"
        record = await pipeline.records.get("evt_123")
        assert record.status == WebhookStatus.COMPLETED.value
        async with pipeline.database.session() as session:
            account = await session.scalar(
                select(ConnectedAccount).where(ConnectedAccount.stripe_account_id == "acct_1")
            )
        assert account.charges_enabled is True

        undelivered = await pipeline.audit_log.list_undelivered()
        assert [e.event_type for e in undelivered] == ["onboarding.account_updated"]
        assert "downstream unavailable" in undelivered[0].last_error
