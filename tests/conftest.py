import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from webhook_pipeline.common.config import (
    AWSSQSConfig,
    DatabaseConfig,
    GCPPubSubConfig,
    MetricsConfig,
    ReceiverConfig,
    RetryConfig,
    StripeConfig,
)
from webhook_pipeline.common.database import Database
from webhook_pipeline.common.models import WebhookJob
from webhook_pipeline.common.queue import InMemoryQueueClient
from webhook_pipeline.common.schema import ConnectedAccount
from webhook_pipeline.pipeline import Pipeline
from webhook_pipeline.receiver.server import create_app

WEBHOOK_SECRET = "whsec_test_secret"


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingQueueClient(InMemoryQueueClient):
    """In-memory queue that remembers every retry delay it was asked for."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.retry_delays: List[float] = []

    async def retry(self, job: WebhookJob, delay: float) -> None:
        self.retry_delays.append(delay)
        await super().retry(job, delay)


def make_stripe_event(
    event_type: str,
    obj: Dict[str, Any],
    event_id: str = "evt_123",
    account: Optional[str] = None,
) -> Dict[str, Any]:
    event = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1700000000,
        "livemode": False,
        "data": {"object": obj},
    }
    if account:
        event["account"] = account
    return event


def build_signature_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Sign ``payload`` the way Stripe signs webhook deliveries."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def sign_payload(
    payload: Dict[str, Any], secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None
) -> Tuple[bytes, Dict[str, str]]:
    body = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": build_signature_header(body, secret, timestamp),
    }
    return body, headers


async def create_connected_account(
    database: Database,
    stripe_account_id: str = "acct_1",
    organization_id: str = "org_1",
    **values: Any,
) -> ConnectedAccount:
    account = ConnectedAccount(
        stripe_account_id=stripe_account_id,
        organization_id=organization_id,
        **values,
    )
    async with database.session() as session:
        async with session.begin():
            session.add(account)
    return account


@pytest.fixture
def clock():
    """Fixture that provides a hand-driven clock for queue leases and delays."""
    return FakeClock()


@pytest.fixture
def queue_client(clock):
    """Fixture that provides an in-memory queue on the fake clock."""
    return RecordingQueueClient(lease_timeout=120.0, clock=clock)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}"


@pytest_asyncio.fixture
async def database(database_url):
    """Fixture that provides a database with all tables created."""
    db = Database(DatabaseConfig(url=database_url))
    await db.create_tables()
    yield db
    await db.dispose()


@pytest.fixture
def gcp_config():
    """Fixture that provides a sample GCP configuration."""
    return GCPPubSubConfig(
        project_id="test-project",
        topic_id="test-topic",
        subscription_id="test-subscription",
        dead_letter_topic_id="test-dead-letters",
    )


@pytest.fixture
def aws_config():
    """Fixture that provides a sample AWS configuration."""
    return AWSSQSConfig(
        region_name="us-west-2",
        queue_url="https://sqs.us-west-2.amazonaws.com/123456789012/test-queue.fifo",
        dead_letter_queue_url="https://sqs.us-west-2.amazonaws.com/123456789012/test-dlq.fifo",
    )


@pytest.fixture
def receiver_config(database_url):
    """Fixture that provides a receiver configuration on a temporary database."""
    return ReceiverConfig(
        host="127.0.0.1",
        port=8000,
        log_level="DEBUG",
        metrics=MetricsConfig(enabled=False),
        database=DatabaseConfig(url=database_url),
        retry=RetryConfig(max_attempts=5, backoff_base=60.0, job_timeout=5.0, lease_timeout=120.0),
        stripe=StripeConfig(webhook_secret=WEBHOOK_SECRET),
        concurrency=1,
        reconcile_interval=None,
    )


@pytest_asyncio.fixture
async def pipeline(receiver_config, queue_client):
    """Fixture that provides a pipeline on the in-memory queue, tables created, workers idle."""
    pipe = Pipeline.from_config(receiver_config, queue_client=queue_client)
    await pipe.database.create_tables()
    yield pipe
    await pipe.shutdown(drain_timeout=5.0)


@pytest_asyncio.fixture
async def receiver_client(receiver_config, pipeline):
    """Fixture that provides an HTTP client for the receiver API."""
    app = create_app(receiver_config, pipeline)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
