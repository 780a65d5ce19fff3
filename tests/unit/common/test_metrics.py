import asyncio
from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry

from webhook_pipeline.common.metrics import (
    MetricsRegistry,
    measure_time,
    metrics,
    notify_lifecycle,
    start_metrics_server,
)


class TestMetricsRegistry:

    def test_metrics_initialization(self):
        """Test that the metrics registry is properly initialized."""
        # Use a separate registry for each test to avoid conflicts
        registry = MetricsRegistry(registry=CollectorRegistry())

        assert hasattr(registry, "webhook_received_total")
        assert hasattr(registry, "webhook_rejected_total")
        assert hasattr(registry, "webhook_duplicate_total")
        assert hasattr(registry, "queue_enqueue_total")
        assert hasattr(registry, "job_lifecycle_total")
        assert hasattr(registry, "job_duration")
        assert hasattr(registry, "domain_event_published_total")
        assert hasattr(registry, "subscriber_errors_total")
        assert hasattr(registry, "up")

    def test_global_metrics_instance(self):
        """Test that the global metrics instance is properly created."""
        assert isinstance(metrics, MetricsRegistry)


class TestNotifyLifecycle:

    def test_counts_stage(self):
        """Test that lifecycle notifications increment the stage counter."""
        counter = metrics.job_lifecycle_total.labels(stage="retrying", event_type="test.event")
        before = counter._value.get()

        notify_lifecycle("retrying", "evt_1", "test.event", attempt=2, delay=120.0)

        assert counter._value.get() == before + 1


class TestMeasureTime:

    @pytest.mark.asyncio
    async def test_measure_time_with_dict_labels(self):
        """Test that the decorator observes the duration with static labels."""
        histogram = MagicMock()

        @measure_time(histogram, {"source": "stripe"})
        async def handler():
            await asyncio.sleep(0)
            return "ok"

        assert await handler() == "ok"
        histogram.labels.assert_called_once_with(source="stripe")
        histogram.labels.return_value.observe.assert_called_once()

    @pytest.mark.asyncio
    async def test_measure_time_with_callable_labels(self):
        """Test that label callables receive the call's positional arguments."""
        histogram = MagicMock()

        class Worker:
            @measure_time(histogram, lambda self, name: {"event_type": name})
            async def run(self, name):
                return name

        assert await Worker().run("account.updated") == "account.updated"
        histogram.labels.assert_called_once_with(event_type="account.updated")

    @pytest.mark.asyncio
    async def test_measure_time_records_failures(self):
        """Test that the duration is recorded even when the coroutine raises."""
        histogram = MagicMock()

        @measure_time(histogram, {"source": "stripe"})
        async def handler():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await handler()
        histogram.labels.return_value.observe.assert_called_once()


def test_start_metrics_server():
    """Test that the metrics server is started on the given address."""
    with patch("webhook_pipeline.common.metrics.start_http_server") as mock_start:
        start_metrics_server(9100, "0.0.0.0")
        mock_start.assert_called_once_with(9100, "0.0.0.0")
