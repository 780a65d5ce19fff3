from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from webhook_pipeline.common.config import ReceiverConfig
from webhook_pipeline.common.logging import configure_logging
from webhook_pipeline.common.metrics import metrics, start_metrics_server
from webhook_pipeline.events.routes import router as events_router
from webhook_pipeline.pipeline import Pipeline
from webhook_pipeline.receiver.routes import router as webhook_router


def create_app(config: ReceiverConfig, pipeline: Optional[Pipeline] = None) -> FastAPI:
    if pipeline is None:
        pipeline = Pipeline.from_config(config)
        pipeline.register_subscribers()

    app = FastAPI(
        title="Webhook Pipeline Receiver",
        description="Receives payment provider webhooks and queues them for processing",
        version="0.1.0",
    )
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhook_router, prefix="/webhooks")
    app.include_router(events_router, prefix="/events")

    @app.on_event("startup")
    async def startup_event():
        configure_logging(config.log_level, serialize=config.log_json)

        # Start metrics server if enabled
        if config.metrics.enabled:
            start_metrics_server(config.metrics.port, config.metrics.host)
            logger.info(f"Metrics server started on {config.metrics.host}:{config.metrics.port}")

        await pipeline.start(run_workers=config.embedded_worker)
        metrics.up.labels(component="receiver").set(1)

        logger.info(f"Webhook Pipeline Receiver started on {config.host}:{config.port}")
        if config.embedded_worker:
            logger.info(f"Embedded worker running with {config.concurrency} consumers")

    @app.on_event("shutdown")
    async def shutdown_event():
        metrics.up.labels(component="receiver").set(0)
        await pipeline.shutdown()
        logger.info("Webhook Pipeline Receiver shutting down")

    return app


def run_server(config: ReceiverConfig, pipeline: Optional[Pipeline] = None):
    app = create_app(config, pipeline)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
