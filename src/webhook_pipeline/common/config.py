from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueType(str, Enum):
    MEMORY = "memory"
    GCP_PUBSUB = "gcp_pubsub"
    AWS_SQS = "aws_sqs"


class GCPPubSubConfig(BaseModel):
    project_id: str
    topic_id: str
    subscription_id: Optional[str] = None  # Only needed for workers
    dead_letter_topic_id: Optional[str] = None


class AWSSQSConfig(BaseModel):
    region_name: str
    queue_url: str  # Must be a FIFO queue
    dead_letter_queue_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    role_arn: Optional[str] = None


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090
    path: str = "/metrics"


class DatabaseConfig(BaseModel):
    url: str = "sqlite+aiosqlite:///./webhook_pipeline.db"
    echo: bool = False
    create_tables: bool = True


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=60.0, gt=0)  # seconds
    backoff_cap: float = Field(default=21600.0, gt=0)  # seconds
    job_timeout: float = Field(default=30.0, gt=0)  # seconds
    lease_timeout: float = Field(default=120.0, gt=0)  # seconds


class StripeConfig(BaseModel):
    webhook_secret: SecretStr
    signature_header: str = "Stripe-Signature"
    tolerance_seconds: int = 300


class BaseConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="WEBHOOK_PIPELINE_",
        extra="ignore",
    )

    log_level: str = "INFO"
    log_json: bool = False
    environment: str = "development"
    queue_type: QueueType = QueueType.MEMORY
    gcp_config: Optional[GCPPubSubConfig] = None
    aws_config: Optional[AWSSQSConfig] = None
    metrics: MetricsConfig = MetricsConfig()
    database: DatabaseConfig = DatabaseConfig()
    retry: RetryConfig = RetryConfig()
    email_enabled: bool = False

    def validate_queue_config(self) -> None:
        if self.queue_type == QueueType.GCP_PUBSUB and not self.gcp_config:
            raise ValueError("GCP PubSub selected but no GCP configuration provided")
        if self.queue_type == QueueType.AWS_SQS and not self.aws_config:
            raise ValueError("AWS SQS selected but no AWS configuration provided")
        if self.retry.lease_timeout <= self.retry.job_timeout:
            raise ValueError("lease_timeout must be greater than job_timeout")


class WorkerConfig(BaseConfig):
    concurrency: int = Field(default=5, ge=1)
    poll_interval: float = 1.0  # seconds to sleep when the queue is empty
    wait_seconds: int = 5  # long-poll wait passed to the broker
    reconcile_interval: Optional[float] = 300.0  # seconds, None disables
    stale_after: float = 600.0  # seconds before a received record is re-enqueued
    drain_timeout: float = 30.0


class ReceiverConfig(WorkerConfig):
    host: str = "0.0.0.0"
    port: int = 8000
    stripe: StripeConfig
    embedded_worker: bool = False
