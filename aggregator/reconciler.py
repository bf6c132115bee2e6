"""Applies live table changes to the aggregated collection."""
import logging
from typing import Optional, Tuple

from processor.models import ChangeNotification, ChangeType, Event
from storage.change_stream import Subscription

logger = logging.getLogger(__name__)


def reconcile(
    events: Tuple[Event, ...],
    notification: ChangeNotification
) -> Tuple[Event, ...]:
    """
    Return a new collection with one change applied.

    Inserts are ignored when the id is already held, updates only replace
    an event that is currently held, and deletes remove by id.

    Args:
        events: Current collection
        notification: Change to apply

    Returns:
        Updated collection (the input is not modified)
    """
    held = any(event.id == notification.event_id for event in events)

    if notification.type is ChangeType.INSERT:
        if held or notification.event is None:
            return events
        return events + (notification.event,)

    if notification.type is ChangeType.UPDATE:
        if not held or notification.event is None:
            return events
        return tuple(
            notification.event if event.id == notification.event_id else event
            for event in events
        )

    return tuple(event for event in events if event.id != notification.event_id)


class LiveReconciler:
    """Keeps an aggregator in step with another client's writes.

    The subscription outlives any single consumer and has to be
    stopped explicitly to release the change feed.
    """

    def __init__(self, source, target):
        """
        Args:
            source: Adapter exposing ``async subscribe(on_change)``
            target: Object exposing ``apply_change(notification)``
        """
        self.source = source
        self.target = target
        self._subscription: Optional[Subscription] = None

    @property
    def active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def start(self) -> None:
        if self.active:
            return
        self._subscription = await self.source.subscribe(self.handle)
        logger.info("Live reconciliation started")

    async def stop(self) -> None:
        if self._subscription is None:
            return
        await self._subscription.close()
        self._subscription = None
        logger.info("Live reconciliation stopped")

    def handle(self, notification: ChangeNotification) -> None:
        logger.debug(
            f"Applying {notification.type.value} for event {notification.event_id}"
        )
        self.target.apply_change(notification)
