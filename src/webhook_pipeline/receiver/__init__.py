"""Receiver component: verifies provider webhooks and queues them."""

from webhook_pipeline.receiver.app import cli, load_config_from_file
from webhook_pipeline.receiver.server import create_app, run_server
from webhook_pipeline.receiver.signature import verify_stripe_signature

__all__ = [
    "cli",
    "create_app",
    "load_config_from_file",
    "run_server",
    "verify_stripe_signature",
]
