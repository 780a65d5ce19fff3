"""Domain event bus, audit log and built-in subscribers."""

from webhook_pipeline.events.audit import EventAuditLog
from webhook_pipeline.events.bus import EventBus, Subscriber, SubscriberResult
from webhook_pipeline.events.publisher import (
    create_event_metadata,
    publish_event,
    publish_practice_event,
    publish_system_event,
    publish_user_event,
)
from webhook_pipeline.events.subscribers import (
    AnalyticsTracker,
    EmailSender,
    register_analytics_subscribers,
    register_email_subscribers,
    register_onboarding_subscribers,
)

__all__ = [
    # Bus
    "EventBus",
    "Subscriber",
    "SubscriberResult",
    # Audit
    "EventAuditLog",
    # Publishing
    "create_event_metadata",
    "publish_event",
    "publish_practice_event",
    "publish_system_event",
    "publish_user_event",
    # Subscribers
    "AnalyticsTracker",
    "EmailSender",
    "register_analytics_subscribers",
    "register_email_subscribers",
    "register_onboarding_subscribers",
]
