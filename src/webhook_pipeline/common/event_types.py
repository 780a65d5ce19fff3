"""Closed sets of event type strings.

Domain event types follow the ``{domain}.{object}_{past_tense_verb}`` naming
convention. Webhook event types are the provider ``type`` strings the
dispatcher has handlers for; anything else is acknowledged as unknown.
"""

from enum import Enum
from typing import List


class DomainEventType(str, Enum):
    # Authentication
    AUTH_USER_SIGNED_UP = "auth.user_signed_up"
    AUTH_EMAIL_VERIFIED = "auth.email_verified"
    AUTH_USER_LOGGED_IN = "auth.user_logged_in"
    AUTH_PASSWORD_CHANGED = "auth.password_changed"
    AUTH_ACCOUNT_DELETED = "auth.account_deleted"

    # Users
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"

    # Practices (organization + details)
    PRACTICE_CREATED = "practice.created"
    PRACTICE_UPDATED = "practice.updated"
    PRACTICE_DELETED = "practice.deleted"
    PRACTICE_MEMBER_INVITED = "practice.member_invited"
    PRACTICE_MEMBER_JOINED = "practice.member_joined"
    PRACTICE_MEMBER_REMOVED = "practice.member_removed"

    # Settings
    SETTINGS_UPDATED = "settings.updated"

    # Onboarding
    ONBOARDING_STARTED = "onboarding.started"
    ONBOARDING_COMPLETED = "onboarding.completed"
    ONBOARDING_ACCOUNT_UPDATED = "onboarding.account_updated"
    ONBOARDING_ACCOUNT_REQUIREMENTS_CHANGED = "onboarding.account_requirements_changed"
    ONBOARDING_ACCOUNT_CAPABILITIES_UPDATED = "onboarding.account_capabilities_updated"
    ONBOARDING_EXTERNAL_ACCOUNT_CREATED = "onboarding.external_account_created"
    ONBOARDING_EXTERNAL_ACCOUNT_UPDATED = "onboarding.external_account_updated"
    ONBOARDING_EXTERNAL_ACCOUNT_DELETED = "onboarding.external_account_deleted"
    ONBOARDING_WEBHOOK_FAILED = "onboarding.webhook_failed"

    # Payments
    PAYMENT_SESSION_CREATED = "payment.session_created"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    # System
    SYSTEM_ERROR_OCCURRED = "system.error_occurred"


class WebhookEventType(str, Enum):
    ACCOUNT_UPDATED = "account.updated"
    CAPABILITY_UPDATED = "capability.updated"
    EXTERNAL_ACCOUNT_CREATED = "account.external_account.created"
    EXTERNAL_ACCOUNT_UPDATED = "account.external_account.updated"
    EXTERNAL_ACCOUNT_DELETED = "account.external_account.deleted"


def is_valid_event_type(value: str) -> bool:
    return value in DomainEventType._value2member_map_


def event_types_for_domain(domain: str) -> List[DomainEventType]:
    return [t for t in DomainEventType if t.value.startswith(f"{domain}.")]
