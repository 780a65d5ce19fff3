import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger
from pydantic import ValidationError

from webhook_pipeline.common.exceptions import SignatureVerificationError
from webhook_pipeline.common.metrics import measure_time, metrics
from webhook_pipeline.common.models import WebhookEnvelope, WebhookRecordView, WebhookStatus
from webhook_pipeline.pipeline import Pipeline, get_pipeline
from webhook_pipeline.receiver.signature import verify_stripe_signature


router = APIRouter()


def _reject(reason: str, detail: str) -> HTTPException:
    metrics.webhook_rejected_total.labels(reason=reason).inc()
    return HTTPException(status_code=400, detail=detail)


@router.post("/stripe")
@measure_time(metrics.webhook_processing_time, {"source": "stripe"})
async def receive_stripe_webhook(
    request: Request,
    pipeline: Pipeline = Depends(get_pipeline),
):
    config = pipeline.config
    body = await request.body()

    # Verify before parsing: nothing unsigned gets past this point
    try:
        verify_stripe_signature(
            body,
            request.headers.get(config.stripe.signature_header),
            config.stripe.webhook_secret.get_secret_value(),
            tolerance=config.stripe.tolerance_seconds,
        )
    except SignatureVerificationError as e:
        logger.warning(f"Rejected webhook with invalid signature: {e}")
        raise _reject("signature", "Invalid signature")

    try:
        payload = json.loads(body)
        envelope = WebhookEnvelope.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Rejected webhook with invalid payload: {e}")
        raise _reject("payload", "Invalid webhook payload")

    log = logger.bind(provider_event_id=envelope.id, event_type=envelope.type)

    existing = await pipeline.records.get(envelope.id)
    if existing is not None and existing.processed:
        metrics.webhook_duplicate_total.labels(event_type=envelope.type).inc()
        log.info(f"Webhook {envelope.id} already processed")
        return {"received": True, "already_processed": True}

    metrics.webhook_received_total.labels(event_type=envelope.type).inc()
    record, created = await pipeline.records.create_if_absent(
        envelope,
        payload,
        headers=dict(request.headers),
        url=str(request.url),
        max_retries=config.retry.max_attempts,
    )
    if not created and record.processed:
        metrics.webhook_duplicate_total.labels(event_type=envelope.type).inc()
        return {"received": True, "already_processed": True}
    if not created and record.status == WebhookStatus.DEAD.value:
        # Dead events only come back through an explicit replay
        metrics.webhook_duplicate_total.labels(event_type=envelope.type).inc()
        log.info(f"Webhook {envelope.id} is dead-lettered, ignoring redelivery")
        return {"received": True, "duplicate": True}

    queue_type = config.queue_type.value
    try:
        job_id = await pipeline.queue_client.enqueue(
            pipeline.build_job(envelope.id, envelope.type, payload)
        )
    except Exception as e:
        metrics.queue_enqueue_errors.labels(queue_type=queue_type).inc()
        log.error(f"Failed to queue webhook {envelope.id}: {e}")
        if not created:
            # Left for the reconciliation sweep
            return {"received": True, "duplicate": True}
        raise HTTPException(status_code=500, detail="Failed to queue webhook")

    if job_id is None:
        metrics.webhook_duplicate_total.labels(event_type=envelope.type).inc()
        log.info(f"Webhook {envelope.id} already queued")
        return {"received": True, "duplicate": True}

    metrics.queue_enqueue_total.labels(queue_type=queue_type).inc()
    log.info(f"Webhook {envelope.id} ({envelope.type}) queued with ID {job_id}")
    return {"received": True, "job_id": job_id}


@router.get("/dead-letter")
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    pipeline: Pipeline = Depends(get_pipeline),
):
    records = await pipeline.records.list_dead(limit=limit, offset=offset)
    return {
        "records": [WebhookRecordView.model_validate(r) for r in records],
        "limit": limit,
        "offset": offset,
    }


@router.post("/dead-letter/{provider_event_id}/replay")
async def replay_dead_letter(
    provider_event_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
):
    record = await pipeline.records.get(provider_event_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown webhook event: {provider_event_id}")
    if record.processed:
        raise HTTPException(status_code=409, detail="Webhook event already processed")
    if record.status != WebhookStatus.DEAD.value and record.retry_count < record.max_retries:
        raise HTTPException(status_code=409, detail="Webhook event is not dead-lettered")

    await pipeline.records.reset_for_replay(provider_event_id)
    try:
        job_id = await pipeline.queue_client.enqueue(
            pipeline.build_job(record.provider_event_id, record.event_type, record.payload)
        )
    except Exception as e:
        logger.error(f"Failed to re-enqueue webhook {provider_event_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to queue webhook")

    logger.info(f"Dead-lettered webhook {provider_event_id} replayed")
    return {"replayed": True, "job_id": job_id}


@router.get("/queue/stats")
async def queue_stats(pipeline: Pipeline = Depends(get_pipeline)):
    return await pipeline.queue_client.stats()


@router.get("/health")
async def health_check():
    return {"status": "ok"}
