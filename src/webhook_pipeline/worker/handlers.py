"""Onboarding handlers for connected-account webhooks.

Each handler loads the local ``ConnectedAccount`` for the provider account,
applies its update inside one transaction and, once that has committed,
publishes domain events carrying both the new and the previous values.
Handlers are safe to run more than once for the same event.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_pipeline.common.event_types import DomainEventType, WebhookEventType
from webhook_pipeline.common.exceptions import EntityNotFoundError, MalformedPayloadError
from webhook_pipeline.common.models import ActorType, DomainEvent, utcnow
from webhook_pipeline.common.schema import ConnectedAccount
from webhook_pipeline.events.publisher import create_event_metadata
from webhook_pipeline.worker.dispatcher import HandlerContext, WebhookHandler

WEBHOOK_ACTOR = "stripe-webhook"


def _data_object(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict) or not obj.get("id"):
        raise MalformedPayloadError(f"Event {payload.get('id')} has no data.object with an id")
    return obj


def _owning_account_id(obj: Dict[str, Any], payload: Dict[str, Any]) -> str:
    account_id = obj.get("account") or payload.get("account")
    if not account_id:
        raise MalformedPayloadError(f"Object {obj['id']} does not name its connected account")
    return account_id


async def _load_account(session: AsyncSession, stripe_account_id: str) -> ConnectedAccount:
    result = await session.execute(
        select(ConnectedAccount).where(ConnectedAccount.stripe_account_id == stripe_account_id)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise EntityNotFoundError("ConnectedAccount", stripe_account_id)
    return account


def _domain_event(
    event_type: DomainEventType,
    organization_id: str,
    payload: Dict[str, Any],
    context: HandlerContext,
) -> DomainEvent:
    return DomainEvent(
        event_type=event_type,
        actor_id=WEBHOOK_ACTOR,
        actor_type=ActorType.WEBHOOK,
        organization_id=organization_id,
        payload=payload,
        metadata=create_event_metadata(
            WEBHOOK_ACTOR,
            correlation_id=context.provider_event_id,
            environment=context.bus.environment,
        ),
    )


def external_account_entry(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Local summary of a bank account or card attached to a connected account."""
    account_type = obj.get("object") or obj.get("type") or "unknown"
    entry: Dict[str, Any] = {
        "id": obj["id"],
        "type": account_type,
        "status": obj.get("status"),
        "metadata": obj.get("metadata") or {},
    }
    if account_type == "card":
        entry.update(
            brand=obj.get("brand"),
            last4=obj.get("last4"),
            exp_month=obj.get("exp_month"),
            exp_year=obj.get("exp_year"),
        )
    elif account_type == "bank_account":
        entry.update(
            bank_name=obj.get("bank_name"),
            last4=obj.get("last4"),
            routing_number=obj.get("routing_number"),
        )
    return entry


def merge_capabilities(
    current: Optional[Dict[str, Any]], incoming: Dict[str, Any]
) -> Dict[str, Any]:
    """Merge capability statuses into the stored map; unknown ids are kept."""
    merged = dict(current or {})
    for capability_id, value in incoming.items():
        existing = merged.get(capability_id)
        existing = dict(existing) if isinstance(existing, dict) else {}
        if isinstance(value, dict):
            existing.update(value)
        else:
            existing["status"] = value
        merged[capability_id] = existing
    return merged


def merge_external_accounts(
    current: Optional[Dict[str, Any]], incoming: Any
) -> Dict[str, Any]:
    """Merge a provider list object (or id-keyed map) into the stored map."""
    if isinstance(incoming, dict) and incoming.get("object") == "list":
        items = incoming.get("data") or []
    elif isinstance(incoming, dict):
        items = list(incoming.values())
    else:
        items = incoming or []

    merged = dict(current or {})
    for item in items:
        if isinstance(item, dict) and item.get("id"):
            merged[item["id"]] = external_account_entry(item)
    return merged


async def handle_account_updated(
    payload: Dict[str, Any], context: HandlerContext
) -> List[DomainEvent]:
    obj = _data_object(payload)
    stripe_account_id = obj["id"]

    async with context.database.session() as session:
        async with session.begin():
            account = await _load_account(session, stripe_account_id)
            organization_id = account.organization_id
            previous = {
                "charges_enabled": account.charges_enabled,
                "payouts_enabled": account.payouts_enabled,
                "details_submitted": account.details_submitted,
                "requirements": account.requirements,
            }

            for flag in ("charges_enabled", "payouts_enabled", "details_submitted"):
                if flag in obj:
                    setattr(account, flag, bool(obj[flag]))
            for column in ("business_type", "company", "individual", "requirements"):
                if column in obj:
                    setattr(account, column, obj[column])
            if "metadata" in obj:
                account.account_metadata = obj["metadata"]
            if obj.get("capabilities"):
                account.capabilities = merge_capabilities(account.capabilities, obj["capabilities"])
            if obj.get("external_accounts"):
                account.external_accounts = merge_external_accounts(
                    account.external_accounts, obj["external_accounts"]
                )
            account.last_refreshed_at = utcnow()

            current = {
                "charges_enabled": account.charges_enabled,
                "payouts_enabled": account.payouts_enabled,
                "details_submitted": account.details_submitted,
                "business_type": account.business_type,
                "requirements": account.requirements,
                "capabilities": account.capabilities,
            }

    events = [
        _domain_event(
            DomainEventType.ONBOARDING_ACCOUNT_UPDATED,
            organization_id,
            {
                "stripe_account_id": stripe_account_id,
                "organization_id": organization_id,
                **current,
                "previous_charges_enabled": previous["charges_enabled"],
                "previous_payouts_enabled": previous["payouts_enabled"],
                "previous_details_submitted": previous["details_submitted"],
                "updated_at": utcnow().isoformat(),
            },
            context,
        )
    ]
    if current["requirements"] != previous["requirements"]:
        events.append(
            _domain_event(
                DomainEventType.ONBOARDING_ACCOUNT_REQUIREMENTS_CHANGED,
                organization_id,
                {
                    "stripe_account_id": stripe_account_id,
                    "organization_id": organization_id,
                    "requirements": current["requirements"],
                    "previous_requirements": previous["requirements"],
                },
                context,
            )
        )

    for event in events:
        context.publish(event)
    logger.info(f"Account {stripe_account_id} updated for organization {organization_id}")
    return events


async def handle_capability_updated(
    payload: Dict[str, Any], context: HandlerContext
) -> List[DomainEvent]:
    capability = _data_object(payload)
    stripe_account_id = _owning_account_id(capability, payload)

    async with context.database.session() as session:
        async with session.begin():
            account = await _load_account(session, stripe_account_id)
            organization_id = account.organization_id
            previous_capabilities = dict(account.capabilities or {})
            account.capabilities = {
                **previous_capabilities,
                capability["id"]: {
                    "status": capability.get("status"),
                    "requirements": capability.get("requirements"),
                    "requested": capability.get("requested"),
                    "requested_at": capability.get("requested_at"),
                },
            }
            account.last_refreshed_at = utcnow()

    event = context.publish(
        _domain_event(
            DomainEventType.ONBOARDING_ACCOUNT_CAPABILITIES_UPDATED,
            organization_id,
            {
                "stripe_account_id": stripe_account_id,
                "organization_id": organization_id,
                "capability_id": capability["id"],
                "capability_status": capability.get("status"),
                "capability_requirements": capability.get("requirements"),
                "requested": capability.get("requested"),
                "requested_at": capability.get("requested_at"),
                "previous_capabilities": previous_capabilities,
                "updated_at": utcnow().isoformat(),
            },
            context,
        )
    )
    logger.info(f"Capability {capability['id']} updated for account {stripe_account_id}")
    return [event]


async def _upsert_external_account(
    payload: Dict[str, Any], context: HandlerContext, event_type: DomainEventType
) -> List[DomainEvent]:
    obj = _data_object(payload)
    stripe_account_id = _owning_account_id(obj, payload)
    entry = external_account_entry(obj)

    async with context.database.session() as session:
        async with session.begin():
            account = await _load_account(session, stripe_account_id)
            organization_id = account.organization_id
            previous_external_accounts = dict(account.external_accounts or {})
            account.external_accounts = {**previous_external_accounts, obj["id"]: entry}
            account.last_refreshed_at = utcnow()

    event = context.publish(
        _domain_event(
            event_type,
            organization_id,
            {
                "stripe_account_id": stripe_account_id,
                "organization_id": organization_id,
                "external_account_id": obj["id"],
                "external_account_type": entry["type"],
                "external_account_status": entry["status"],
                "external_account": entry,
                "previous_external_account": previous_external_accounts.get(obj["id"]),
                "updated_at": utcnow().isoformat(),
            },
            context,
        )
    )
    logger.info(f"External account {obj['id']} stored for account {stripe_account_id}")
    return [event]


async def handle_external_account_created(
    payload: Dict[str, Any], context: HandlerContext
) -> List[DomainEvent]:
    return await _upsert_external_account(
        payload, context, DomainEventType.ONBOARDING_EXTERNAL_ACCOUNT_CREATED
    )


async def handle_external_account_updated(
    payload: Dict[str, Any], context: HandlerContext
) -> List[DomainEvent]:
    return await _upsert_external_account(
        payload, context, DomainEventType.ONBOARDING_EXTERNAL_ACCOUNT_UPDATED
    )


async def handle_external_account_deleted(
    payload: Dict[str, Any], context: HandlerContext
) -> List[DomainEvent]:
    obj = _data_object(payload)
    stripe_account_id = _owning_account_id(obj, payload)

    async with context.database.session() as session:
        async with session.begin():
            account = await _load_account(session, stripe_account_id)
            organization_id = account.organization_id
            previous_external_accounts = dict(account.external_accounts or {})
            remaining = {k: v for k, v in previous_external_accounts.items() if k != obj["id"]}
            account.external_accounts = remaining
            account.last_refreshed_at = utcnow()

    event = context.publish(
        _domain_event(
            DomainEventType.ONBOARDING_EXTERNAL_ACCOUNT_DELETED,
            organization_id,
            {
                "stripe_account_id": stripe_account_id,
                "organization_id": organization_id,
                "external_account_id": obj["id"],
                "external_account_type": obj.get("object") or obj.get("type") or "unknown",
                "previous_external_account": previous_external_accounts.get(obj["id"]),
                "updated_at": utcnow().isoformat(),
            },
            context,
        )
    )
    logger.info(f"External account {obj['id']} removed from account {stripe_account_id}")
    return [event]


HANDLERS: Dict[str, WebhookHandler] = {
    WebhookEventType.ACCOUNT_UPDATED.value: handle_account_updated,
    WebhookEventType.CAPABILITY_UPDATED.value: handle_capability_updated,
    WebhookEventType.EXTERNAL_ACCOUNT_CREATED.value: handle_external_account_created,
    WebhookEventType.EXTERNAL_ACCOUNT_UPDATED.value: handle_external_account_updated,
    WebhookEventType.EXTERNAL_ACCOUNT_DELETED.value: handle_external_account_deleted,
}
