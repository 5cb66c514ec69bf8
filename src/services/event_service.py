"""
Event publishing service.

Publishes subscription change events to EventBridge in batches. Publishing is
best effort: a detection run's committed state is the source of truth, events
are notifications about it.
"""
import logging
from typing import List, Optional

from models.events import BaseEvent, SubscriptionChangedEvent
from models.subscription import SubscriptionChangeEvent
from utils.event_dao import (
    EVENTBRIDGE_BATCH_LIMIT,
    publish_events_batch_to_eventbridge,
    get_event_bus_name,
)

logger = logging.getLogger(__name__)


class EventService:
    """Service for publishing events with batching"""

    def __init__(self):
        self.event_bus_name = get_event_bus_name()
        logger.debug(f"EventService initialized with bus: {self.event_bus_name}")

    def publish_events_batch(self, events: List[BaseEvent]) -> int:
        """
        Publish multiple events in batches of 10 (the EventBridge limit).

        Returns:
            int: Number of events successfully published
        """
        if not events:
            logger.debug("No events provided for batch publishing")
            return 0

        total_events = len(events)
        successful_count = 0

        for i in range(0, total_events, EVENTBRIDGE_BATCH_LIMIT):
            batch = events[i:i + EVENTBRIDGE_BATCH_LIMIT]
            batch_number = (i // EVENTBRIDGE_BATCH_LIMIT) + 1

            event_entries = [event.to_eventbridge_format() for event in batch]
            batch_success_count = publish_events_batch_to_eventbridge(event_entries)
            successful_count += batch_success_count

            if batch_success_count < len(batch):
                logger.warning(
                    f"Batch {batch_number}: {batch_success_count}/{len(batch)} events published successfully"
                )

        logger.info(f"Batch publishing complete: {successful_count}/{total_events} events published successfully")
        return successful_count

    def publish_subscription_changes(
        self,
        user_id: str,
        changes: List[SubscriptionChangeEvent],
        correlation_id: Optional[str] = None
    ) -> int:
        """Publish the change events of a detection run, in the order they were produced."""
        events: List[BaseEvent] = [
            SubscriptionChangedEvent(
                user_id=user_id,
                change_type=change.change_type.value,
                detail=change.to_event_detail(),
                correlation_id=correlation_id
            )
            for change in changes
        ]
        return self.publish_events_batch(events)


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

event_service = EventService()


def publish_events_batch(events: List[BaseEvent]) -> int:
    """Convenience function to publish multiple events using the global service"""
    return event_service.publish_events_batch(events)
