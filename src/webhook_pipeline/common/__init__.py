"""Common configuration, models, storage and queueing for the webhook pipeline."""

from webhook_pipeline.common.config import (
    AWSSQSConfig,
    BaseConfig,
    DatabaseConfig,
    GCPPubSubConfig,
    MetricsConfig,
    QueueType,
    ReceiverConfig,
    RetryConfig,
    StripeConfig,
    WorkerConfig,
)
from webhook_pipeline.common.database import Base, Database
from webhook_pipeline.common.event_types import DomainEventType, WebhookEventType
from webhook_pipeline.common.exceptions import (
    ConfigurationError,
    EntityNotFoundError,
    MalformedPayloadError,
    PipelineError,
    RegistryFrozenError,
    SignatureVerificationError,
)
from webhook_pipeline.common.metrics import (
    MetricsRegistry,
    measure_time,
    metrics,
    notify_lifecycle,
    start_metrics_server,
)
from webhook_pipeline.common.models import (
    ActorType,
    DomainEvent,
    EventMetadata,
    WebhookEnvelope,
    WebhookJob,
    WebhookStatus,
)
from webhook_pipeline.common.queue import (
    AWSSQSClient,
    GCPPubSubClient,
    InMemoryQueueClient,
    QueueClient,
    compute_backoff,
    create_queue_client,
)
from webhook_pipeline.common.repositories import WebhookRecordRepository

__all__ = [
    # Config
    "AWSSQSConfig",
    "BaseConfig",
    "DatabaseConfig",
    "GCPPubSubConfig",
    "MetricsConfig",
    "QueueType",
    "ReceiverConfig",
    "RetryConfig",
    "StripeConfig",
    "WorkerConfig",
    # Storage
    "Base",
    "Database",
    "WebhookRecordRepository",
    # Event types
    "DomainEventType",
    "WebhookEventType",
    # Errors
    "ConfigurationError",
    "EntityNotFoundError",
    "MalformedPayloadError",
    "PipelineError",
    "RegistryFrozenError",
    "SignatureVerificationError",
    # Models
    "ActorType",
    "DomainEvent",
    "EventMetadata",
    "WebhookEnvelope",
    "WebhookJob",
    "WebhookStatus",
    # Queue
    "AWSSQSClient",
    "GCPPubSubClient",
    "InMemoryQueueClient",
    "QueueClient",
    "compute_backoff",
    "create_queue_client",
    # Metrics
    "MetricsRegistry",
    "measure_time",
    "metrics",
    "notify_lifecycle",
    "start_metrics_server",
]
