"""
Completion Notifications - Tell subscribers when test results are ready.

The aggregator only records the status change. Sending is delegated to a
NotificationDispatcher; the default one writes a structured log entry for the
push/email relay to pick up.
"""

from typing import Protocol

from structlog import get_logger

from oneshot.models.api import DemandStatus
from oneshot.models.domain import DemandSnapshot
from oneshot.services.demand import DemandAggregator

logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    """Delivery channel for results-ready notifications."""

    async def notify_results_ready(
        self, snapshot: DemandSnapshot, subscriber_ids: list[str]
    ) -> None: ...


class LogNotificationDispatcher:
    """Dispatcher that records notifications as structured log events."""

    async def notify_results_ready(
        self, snapshot: DemandSnapshot, subscriber_ids: list[str]
    ) -> None:
        logger.info(
            "results_ready_notification",
            product_key=snapshot.product_key,
            product_name=snapshot.product_name,
            subscriber_count=len(subscriber_ids),
            subscriber_ids=subscriber_ids,
        )


async def notify_completion(
    aggregator: DemandAggregator,
    dispatcher: NotificationDispatcher,
    product_key: str,
) -> int:
    """
    Dispatch results-ready notifications for a completed record, once.

    Returns the number of subscribers notified (0 when the record is not
    complete or was already notified).
    """
    snapshot = await aggregator.get_snapshot(product_key)
    if snapshot.status != DemandStatus.COMPLETE:
        return 0

    if not await aggregator.mark_completion_notified(product_key):
        logger.info("completion_already_notified", product_key=product_key)
        return 0

    subscriber_ids = await aggregator.list_subscribers(product_key)
    await dispatcher.notify_results_ready(snapshot, subscriber_ids)
    return len(subscriber_ids)
