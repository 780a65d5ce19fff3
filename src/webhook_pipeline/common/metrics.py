import time
from functools import wraps
from typing import Callable, Dict, Optional, Union

from loguru import logger
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server


class MetricsRegistry:
    def __init__(self, registry=None):
        # Use a provided registry or the default one
        self.registry = registry or REGISTRY

        # Receiver metrics
        self.webhook_received_total = Counter(
            "webhook_pipeline_received_total",
            "Total number of verified webhooks received",
            ["event_type"],
            registry=self.registry,
        )
        self.webhook_rejected_total = Counter(
            "webhook_pipeline_rejected_total",
            "Total number of webhooks rejected at the boundary",
            ["reason"],
            registry=self.registry,
        )
        self.webhook_duplicate_total = Counter(
            "webhook_pipeline_duplicate_total",
            "Total number of duplicate webhook deliveries acknowledged",
            ["event_type"],
            registry=self.registry,
        )
        self.webhook_processing_time = Histogram(
            "webhook_pipeline_receive_seconds",
            "Time spent receiving webhooks",
            ["source"],
            registry=self.registry,
        )
        self.queue_enqueue_total = Counter(
            "webhook_pipeline_queue_enqueue_total",
            "Total number of jobs enqueued",
            ["queue_type"],
            registry=self.registry,
        )
        self.queue_enqueue_errors = Counter(
            "webhook_pipeline_queue_enqueue_errors",
            "Total number of errors enqueueing jobs",
            ["queue_type"],
            registry=self.registry,
        )

        # Worker metrics
        self.job_lifecycle_total = Counter(
            "webhook_pipeline_job_lifecycle_total",
            "Job lifecycle transitions",
            ["stage", "event_type"],
            registry=self.registry,
        )
        self.job_duration = Histogram(
            "webhook_pipeline_job_seconds",
            "Time spent executing webhook jobs",
            ["event_type"],
            registry=self.registry,
        )

        # Event bus metrics
        self.domain_event_published_total = Counter(
            "webhook_pipeline_domain_event_published_total",
            "Total number of domain events published",
            ["event_type"],
            registry=self.registry,
        )
        self.subscriber_errors_total = Counter(
            "webhook_pipeline_subscriber_errors_total",
            "Total number of domain event subscriber failures",
            ["subscriber"],
            registry=self.registry,
        )

        # Common metrics
        self.up = Gauge(
            "webhook_pipeline_up",
            "Whether the webhook pipeline component is up",
            ["component"],
            registry=self.registry,
        )


# Global metrics registry
metrics = MetricsRegistry()


def start_metrics_server(port: int = 9090, host: str = "127.0.0.1"):
    """Start the Prometheus metrics server."""
    start_http_server(port, host)


def notify_lifecycle(stage: str, dedupe_key: str, event_type: str, **extra) -> None:
    """Emit a structured job lifecycle notification.

    Diagnostic only: nothing in the pipeline reads these back.
    """
    metrics.job_lifecycle_total.labels(stage=stage, event_type=event_type).inc()
    logger.bind(lifecycle=stage, dedupe_key=dedupe_key, event_type=event_type, **extra).info(
        f"Job {dedupe_key} ({event_type}) {stage}"
    )


def measure_time(
    metric: Histogram, labels: Optional[Union[Dict[str, str], Callable]] = None
) -> Callable:
    """Decorator to measure the execution time of a coroutine."""

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            labels_dict = {}
            if callable(labels) and args:
                try:
                    labels_dict = labels(*args)
                except Exception as e:
                    logger.error(f"Error getting labels from function: {e}")
            elif isinstance(labels, dict):
                labels_dict = labels

            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = time.time() - start_time
                try:
                    metric.labels(**labels_dict).observe(duration)
                except Exception as e:
                    logger.error(f"Error recording metric: {e}")

        return wrapper

    return decorator
