import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from loguru import logger

from webhook_pipeline.common.config import WorkerConfig
from webhook_pipeline.common.logging import configure_logging
from webhook_pipeline.common.metrics import metrics, start_metrics_server
from webhook_pipeline.pipeline import Pipeline


_shutdown_event: Optional[asyncio.Event] = None


def load_config_from_file(config_path: str) -> WorkerConfig:
    """Load configuration from a YAML file; environment variables fill the gaps."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return WorkerConfig(**config_data)


def setup_app(config: WorkerConfig) -> Pipeline:
    """Configure logging and build the pipeline for a standalone worker."""
    configure_logging(config.log_level, serialize=config.log_json)

    pipeline = Pipeline.from_config(config)
    pipeline.register_subscribers()

    logger.info("Webhook Pipeline Worker initialized")
    logger.info(f"Queue type: {config.queue_type.value}, concurrency: {config.concurrency}")
    return pipeline


async def run_worker(pipeline: Pipeline):
    """Run the worker until a termination signal arrives."""
    global _shutdown_event
    config = pipeline.config
    _shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Start metrics server if enabled
    if config.metrics.enabled:
        start_metrics_server(config.metrics.port, config.metrics.host)
        logger.info(f"Metrics server started on {config.metrics.host}:{config.metrics.port}")

    await pipeline.start(run_workers=True)
    metrics.up.labels(component="worker").set(1)
    logger.info("Webhook Pipeline Worker started")

    try:
        await _shutdown_event.wait()
    finally:
        metrics.up.labels(component="worker").set(0)
        await pipeline.shutdown(config.drain_timeout)
        logger.info("Webhook Pipeline Worker stopped")


def handle_signal(sig):
    """Handle termination signals."""
    if _shutdown_event:
        logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        _shutdown_event.set()


async def _list_dead_letters(pipeline: Pipeline, limit: int):
    if pipeline.config.database.create_tables:
        await pipeline.database.create_tables()
    try:
        return await pipeline.records.list_dead(limit=limit)
    finally:
        await pipeline.database.dispose()


@click.group()
def cli():
    """Webhook Pipeline Worker CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Start the worker service."""
    try:
        config_obj = load_config_from_file(config)
        pipeline = setup_app(config_obj)
        asyncio.run(run_worker(pipeline))
    except Exception as e:
        logger.error(f"Failed to start worker: {e}")
        sys.exit(1)


@cli.command("dead-letters")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
@click.option("--limit", default=50, show_default=True, help="Maximum records to list")
def dead_letters(config: str, limit: int):
    """List webhook events that exhausted their attempts."""
    try:
        config_obj = load_config_from_file(config)
        configure_logging(config_obj.log_level, serialize=config_obj.log_json)
        pipeline = Pipeline.from_config(config_obj)
        records = asyncio.run(_list_dead_letters(pipeline, limit))
    except Exception as e:
        logger.error(f"Failed to list dead letters: {e}")
        sys.exit(1)

    if not records:
        click.echo("No dead-lettered webhook events")
        return
    for record in records:
        click.echo(
            f"{record.provider_event_id}\t{record.event_type}\t"
            f"attempts={record.retry_count}\t{record.error or ''}"
        )


if __name__ == "__main__":
    cli()
