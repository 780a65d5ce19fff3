"""Worker component: consumes queued webhooks and dispatches them to handlers."""

from webhook_pipeline.worker.dispatcher import (
    DispatchOutcome,
    DispatchResult,
    HandlerContext,
    TypeDispatcher,
)
from webhook_pipeline.worker.handlers import HANDLERS
from webhook_pipeline.worker.runner import JobWorker

__all__ = [
    "DispatchOutcome",
    "DispatchResult",
    "HandlerContext",
    "HANDLERS",
    "JobWorker",
    "TypeDispatcher",
]
