"""Built-in feature subscribers registered on the event bus at startup."""

from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import update

from webhook_pipeline.common.database import Database
from webhook_pipeline.common.event_types import DomainEventType
from webhook_pipeline.common.models import ActorType, DomainEvent, utcnow
from webhook_pipeline.common.schema import ConnectedAccount
from webhook_pipeline.events.bus import EventBus
from webhook_pipeline.events.publisher import publish_system_event


class AnalyticsTracker:
    """Default tracker: writes analytics calls to the log."""

    async def track(
        self,
        event_name: str,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.bind(analytics=True).info(
            f"Analytics event tracked: {event_name} "
            f"(user={user_id}, organization={organization_id}, properties={properties or {}})"
        )


class EmailSender:
    """Default sender: writes outgoing mail to the log instead of sending it."""

    async def send(self, to: str, subject: str, template: str, data: Dict[str, Any]) -> None:
        logger.info(f"Sending email '{subject}' to {to} using template {template}")


# Events that count as product conversions, with their analytics names
CONVERSION_EVENTS = {
    DomainEventType.AUTH_USER_SIGNED_UP: "User Signed Up",
    DomainEventType.AUTH_USER_LOGGED_IN: "User Logged In",
    DomainEventType.PRACTICE_CREATED: "Practice Created",
    DomainEventType.PAYMENT_RECEIVED: "Payment Received",
    DomainEventType.ONBOARDING_COMPLETED: "Onboarding Completed",
}


def register_analytics_subscribers(bus: EventBus, tracker: Optional[AnalyticsTracker] = None) -> None:
    tracker = tracker or AnalyticsTracker()

    async def track_event(event: DomainEvent) -> None:
        await tracker.track(
            event.event_type.value,
            user_id=event.actor_id,
            organization_id=event.organization_id,
            properties={"event_id": event.event_id, "source": event.metadata.source},
        )

    async def track_conversion(event: DomainEvent) -> None:
        await tracker.track(
            CONVERSION_EVENTS[event.event_type],
            user_id=event.actor_id,
            organization_id=event.organization_id,
            properties=dict(event.payload),
        )

    bus.subscribe_all(track_event, name="analytics.track_event")
    bus.subscribe_many(CONVERSION_EVENTS, track_conversion, name="analytics.track_conversion")
    logger.info(f"Registered analytics subscribers ({len(CONVERSION_EVENTS)} conversion events)")


def register_email_subscribers(bus: EventBus, sender: Optional[EmailSender] = None) -> None:
    sender = sender or EmailSender()

    async def send_welcome_email(event: DomainEvent) -> None:
        email = event.payload.get("email")
        if not email:
            logger.warning(f"Signup event {event.event_id} has no email address, skipping")
            return
        await sender.send(
            to=email,
            subject="Welcome!",
            template="welcome",
            data={"name": event.payload.get("name")},
        )

    # Retried: the sender talks to an external service
    bus.subscribe(
        DomainEventType.AUTH_USER_SIGNED_UP,
        send_welcome_email,
        name="email.welcome",
        retries=2,
    )
    logger.info("Registered email subscribers")


def register_onboarding_subscribers(bus: EventBus, database: Database) -> None:
    async def complete_onboarding(event: DomainEvent) -> None:
        payload = event.payload
        if not (
            payload.get("charges_enabled")
            and payload.get("payouts_enabled")
            and payload.get("details_submitted")
        ):
            return

        stripe_account_id = payload["stripe_account_id"]
        completed_at = utcnow()
        async with database.session() as session:
            async with session.begin():
                # Only the first fully-enabled update wins
                result = await session.execute(
                    update(ConnectedAccount)
                    .where(
                        ConnectedAccount.stripe_account_id == stripe_account_id,
                        ConnectedAccount.onboarding_completed_at.is_(None),
                    )
                    .values(onboarding_completed_at=completed_at, updated_at=completed_at)
                )
        if result.rowcount == 0:
            return

        organization_id = payload.get("organization_id") or event.organization_id
        logger.info(f"Onboarding completed for organization {organization_id}")
        publish_system_event(
            bus,
            DomainEventType.ONBOARDING_COMPLETED,
            {
                "organization_id": organization_id,
                "stripe_account_id": stripe_account_id,
                "onboarding_completed_at": completed_at.isoformat(),
            },
            actor_id=organization_id,
            actor_type=ActorType.ORGANIZATION,
            organization_id=organization_id,
            source="onboarding",
            correlation_id=event.event_id,
        )

    async def mark_practice_updated(event: DomainEvent) -> None:
        if not event.organization_id:
            logger.error(f"Onboarding completed event {event.event_id} has no organization id")
            return
        publish_system_event(
            bus,
            DomainEventType.PRACTICE_UPDATED,
            {
                "organization_id": event.organization_id,
                "update_type": "onboarding_completed",
                "updated_at": utcnow().isoformat(),
            },
            actor_id=event.organization_id,
            actor_type=ActorType.ORGANIZATION,
            organization_id=event.organization_id,
            source="onboarding",
            correlation_id=event.event_id,
        )

    bus.subscribe(
        DomainEventType.ONBOARDING_ACCOUNT_UPDATED,
        complete_onboarding,
        name="onboarding.complete_onboarding",
    )
    bus.subscribe(
        DomainEventType.ONBOARDING_COMPLETED,
        mark_practice_updated,
        name="onboarding.mark_practice_updated",
    )
    logger.info("Registered onboarding subscribers")
