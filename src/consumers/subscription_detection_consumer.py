"""
Subscription Detection Consumer Lambda.

Consumes EventBridge events that should trigger subscription detection and
publishes the resulting subscription change events.

Event Types Processed:
- transactions.sync.completed: Bank sync refreshed a user's transactions
- subscription.detection.requested: Scheduled or on-demand detection run
- subscription.cancellation.marked: The user cancelled a subscription
"""

import json
import logging
import time
import traceback
import uuid
from typing import Any, Dict, Optional

from consumers.base_consumer import BaseEventConsumer, EventProcessingError
from models.events import BaseEvent
from models.transaction import MS_PER_DAY
from services.event_service import event_service
from services.subscription_detection import (
    DetectionCancelled,
    DetectionConfig,
    DynamoDBMerchantAliasRepository,
    DynamoDBSubscriptionRepository,
    DynamoDBTransactionSource,
    SubscriptionSynthesizer,
)
from utils.db.base import NotFound

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Stop committing this long before the Lambda times out
DEADLINE_SAFETY_MARGIN_MS = 5000


class SubscriptionDetectionConsumer(BaseEventConsumer):
    """Consumer for subscription detection and cancellation events"""

    DETECTION_EVENT_TYPES = {
        "transactions.sync.completed",
        "subscription.detection.requested",
    }
    CANCELLATION_EVENT_TYPES = {
        "subscription.cancellation.marked",
    }

    def __init__(
        self,
        synthesizer: Optional[SubscriptionSynthesizer] = None,
        transaction_source=None,
        publisher=None,
        config: Optional[DetectionConfig] = None
    ):
        super().__init__("subscription_detection_consumer")
        self.config = config or DetectionConfig.from_env()
        self.synthesizer = synthesizer or SubscriptionSynthesizer(
            DynamoDBSubscriptionRepository(),
            DynamoDBMerchantAliasRepository(),
            self.config
        )
        self.transaction_source = transaction_source or DynamoDBTransactionSource()
        self.publisher = publisher or event_service

    def should_process_event(self, event: BaseEvent) -> bool:
        return event.event_type in self.DETECTION_EVENT_TYPES or event.event_type in self.CANCELLATION_EVENT_TYPES

    def process_event(self, event: BaseEvent) -> None:
        if not event.user_id:
            raise EventProcessingError("Event has no userId", event_id=event.event_id, permanent=True)

        logger.info(f"Processing {event.event_type} event {event.event_id} for user {event.user_id}")
        if event.event_type in self.CANCELLATION_EVENT_TYPES:
            self._process_cancellation(event)
        else:
            self._process_detection(event)

    def _process_detection(self, event: BaseEvent) -> None:
        user_id = event.user_id
        data = event.data or {}
        as_of = data.get('asOf') or int(time.time() * 1000)
        if not isinstance(as_of, int) or as_of < 0:
            raise EventProcessingError(f"Invalid asOf: {as_of}", event_id=event.event_id, permanent=True)

        start_date_ts = as_of - self.config.clustering.lookback_days * MS_PER_DAY
        transactions = self.transaction_source.list_transactions(
            user_id, start_date_ts=start_date_ts, end_date_ts=as_of
        )
        try:
            if transactions:
                result = self.synthesizer.detect_user_subscriptions(
                    user_id,
                    transactions,
                    as_of=as_of,
                    deadline=self._deadline()
                )
            else:
                logger.info(f"No transactions found for user {user_id}, refreshing subscription lifecycle only")
                result = self.synthesizer.refresh_lifecycle(user_id, as_of=as_of, deadline=self._deadline())
        except DetectionCancelled as e:
            raise EventProcessingError(str(e), event_id=event.event_id, permanent=False)

        if result.events:
            published = self.publisher.publish_subscription_changes(
                user_id, result.events, correlation_id=event.correlation_id or event.event_id
            )
            logger.info(f"Published {published}/{len(result.events)} subscription change events for user {user_id}")

    def _process_cancellation(self, event: BaseEvent) -> None:
        data = event.data or {}
        raw_id = data.get('subscriptionId')
        if not raw_id:
            raise EventProcessingError("subscriptionId is missing", event_id=event.event_id, permanent=True)
        try:
            subscription_id = uuid.UUID(str(raw_id))
        except ValueError:
            raise EventProcessingError(f"Invalid subscriptionId: {raw_id}", event_id=event.event_id, permanent=True)

        cancelled_at = data.get('cancelledAt') or event.timestamp or None
        try:
            change = self.synthesizer.mark_cancelled(event.user_id, subscription_id, cancelled_at=cancelled_at)
        except NotFound as e:
            raise EventProcessingError(str(e), event_id=event.event_id, permanent=True)

        if change is not None:
            self.publisher.publish_subscription_changes(
                event.user_id, [change], correlation_id=event.correlation_id or event.event_id
            )

    def _deadline(self) -> Optional[float]:
        """Wall-clock deadline derived from the remaining Lambda time, if known."""
        get_remaining = getattr(self._lambda_context, 'get_remaining_time_in_millis', None)
        if get_remaining is None:
            return None
        remaining_ms = get_remaining() - DEADLINE_SAFETY_MARGIN_MS
        return time.time() + max(remaining_ms, 0) / 1000


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Lambda handler for subscription detection events.

    Example event:
    {
        "source": "bank.sync",
        "detail-type": "transactions.sync.completed",
        "detail": {
            "eventId": "...",
            "userId": "...",
            "data": {"accountId": "...", "transactionCount": 42}
        }
    }
    """
    try:
        consumer = SubscriptionDetectionConsumer()
        return consumer.handle_eventbridge_event(event, context)
    except Exception as e:
        logger.error(f"Subscription detection consumer failed: {str(e)}")
        logger.error(f"Stacktrace: {traceback.format_exc()}")
        return {
            "statusCode": 500,
            "body": json.dumps({
                "error": "Subscription detection consumer failed",
                "message": str(e),
            }),
        }
