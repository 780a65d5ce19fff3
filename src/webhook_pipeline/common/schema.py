"""SQLAlchemy tables owned by the event-processing core."""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from webhook_pipeline.common.database import Base
from webhook_pipeline.common.models import WebhookStatus, utcnow

JsonType = JSONB().with_variant(JSON(), "sqlite")


class WebhookRecord(Base):
    """One row per distinct provider event id: idempotency key and audit trail."""

    __tablename__ = "webhook_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    provider_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=WebhookStatus.RECEIVED.value
    )
    processed: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error: Mapped[Optional[str]] = mapped_column(Text())
    error_stack: Mapped[Optional[str]] = mapped_column(Text())
    retry_count: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer(), nullable=False, default=5)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    received_headers: Mapped[Optional[Dict[str, str]]] = mapped_column(JsonType)
    url: Mapped[Optional[str]] = mapped_column(Text())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("ix_webhook_records_processed_status", "processed", "status"),)


class DomainEventRecord(Base):
    """Append-only audit log of published domain events."""

    __tablename__ = "domain_events"

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_version: Mapped[str] = mapped_column(String(32), nullable=False, default="1.0.0")
    actor_id: Mapped[Optional[str]] = mapped_column(String(255))
    actor_type: Mapped[Optional[str]] = mapped_column(String(32))
    organization_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JsonType, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    retry_count: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text())
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ConnectedAccount(Base):
    """Local mirror of a provider connected account, updated from webhooks."""

    __tablename__ = "connected_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    stripe_account_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    account_type: Mapped[str] = mapped_column(String(32), nullable=False, default="custom")
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="US")
    email: Mapped[Optional[str]] = mapped_column(String(255))
    charges_enabled: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    business_type: Mapped[Optional[str]] = mapped_column(String(64))
    company: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType)
    individual: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType)
    requirements: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType)
    capabilities: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType)
    external_accounts: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType)
    account_metadata: Mapped[Optional[Dict[str, str]]] = mapped_column("metadata", JsonType)
    onboarding_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
