import sys
from pathlib import Path

import click
import yaml
from loguru import logger

from webhook_pipeline.common.config import ReceiverConfig
from webhook_pipeline.common.logging import configure_logging
from webhook_pipeline.receiver.server import run_server


def load_config_from_file(config_path: str) -> ReceiverConfig:
    """Load configuration from a YAML file; environment variables fill the gaps."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return ReceiverConfig(**config_data)


@click.group()
def cli():
    """Webhook Pipeline Receiver CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Start the receiver server."""
    try:
        config_obj = load_config_from_file(config)
        configure_logging(config_obj.log_level, serialize=config_obj.log_json)
        config_obj.validate_queue_config()
        run_server(config_obj)
    except Exception as e:
        logger.error(f"Failed to start receiver: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
