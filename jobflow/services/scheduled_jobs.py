"""
Scheduled Jobs — the polled background work of the workflow engine.

Jobs:
    - reminder_dispatch:       due reminders → notification queue entries
    - notification_delivery:   drive pending queue entries through the transport
    - aggregate_refresh_retry: retry failed project stage completion refreshes
"""

from __future__ import annotations

from typing import Any

from jobflow.services import aggregates, notification_queue, reminder_scheduler
from jobflow.services.scheduler_service import register_job


@register_job("reminder_dispatch")
def dispatch_reminders(app) -> dict[str, Any]:
    """Enqueue notifications for reminders whose fire time has passed."""
    return reminder_scheduler.dispatch_due_reminders(limit=app.config.get("REMINDER_BATCH_SIZE", 50))


@register_job("notification_delivery")
def deliver_notifications(app) -> dict[str, Any]:
    """Deliver pending notification queue entries."""
    transport = app.extensions.get("delivery_transport")
    return notification_queue.process_queue(
        transport=transport,
        limit=app.config.get("REMINDER_BATCH_SIZE", 50),
    )


@register_job("aggregate_refresh_retry")
def retry_aggregate_refreshes(app) -> dict[str, Any]:
    """Retry derived aggregate refreshes that failed after a transition."""
    return aggregates.retry_pending(max_attempts=app.config.get("AGGREGATE_RETRY_MAX_ATTEMPTS", 5))
