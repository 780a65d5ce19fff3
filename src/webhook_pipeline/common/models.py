from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from webhook_pipeline.common.event_types import DomainEventType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    DEAD = "dead"


class WebhookEnvelope(BaseModel):
    """The subset of a provider event the receiver needs before queueing."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    account: Optional[str] = None
    livemode: bool = False


class WebhookJob(BaseModel):
    dedupe_key: str
    event_type: str
    payload: Dict[str, Any]
    attempts: int = 0
    max_attempts: int = 5
    backoff_base: float = 60.0
    enqueued_at: datetime = Field(default_factory=utcnow)

    # Broker-side claim handle (lease token, receipt handle or ack id); never serialized
    _receipt: Optional[str] = PrivateAttr(default=None)


class ActorType(str, Enum):
    USER = "user"
    ORGANIZATION = "organization"
    SYSTEM = "system"
    WEBHOOK = "webhook"


class EventMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    environment: Optional[str] = None


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: DomainEventType
    event_version: str = "1.0.0"
    actor_id: Optional[str] = None
    actor_type: ActorType = ActorType.SYSTEM
    organization_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata
    created_at: datetime = Field(default_factory=utcnow)


class StoredEvent(BaseModel):
    """A domain event as read back from the audit log."""

    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    event_version: str
    actor_id: Optional[str] = None
    actor_type: Optional[str] = None
    organization_id: Optional[str] = None
    payload: Dict[str, Any]
    metadata: Dict[str, Any] = Field(validation_alias="event_metadata")
    processed: bool
    retry_count: int
    last_error: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


class TimelineQuery(BaseModel):
    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    event_types: Optional[List[str]] = None
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class TimelinePage(BaseModel):
    events: List[StoredEvent]
    pagination: Pagination


class WebhookRecordView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_event_id: str
    event_type: str
    status: WebhookStatus
    processed: bool
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime] = None
    created_at: datetime
