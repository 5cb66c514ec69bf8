"""
Event models for the event-driven architecture.
Contains the base event structure and the subscription detection event types.
"""
from dataclasses import dataclass
from typing import Dict, Any, Optional
from datetime import datetime
import uuid
import json

SUBSCRIPTION_EVENT_SOURCE = 'subscription.detection'


@dataclass
class BaseEvent:
    """Base event structure for all events in the system"""
    event_id: str
    event_type: str
    event_version: str
    timestamp: int  # Unix timestamp in milliseconds
    source: str
    user_id: str
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_eventbridge_format(self) -> Dict[str, Any]:
        """Convert to EventBridge event format"""
        return {
            'Source': self.source,
            'DetailType': self.event_type,
            'Detail': json.dumps({
                'eventId': self.event_id,
                'eventVersion': self.event_version,
                'timestamp': self.timestamp,
                'userId': self.user_id,
                'correlationId': self.correlation_id,
                'causationId': self.causation_id,
                'data': self.data or {},
                'metadata': self.metadata or {}
            })
        }


# =============================================================================
# INBOUND EVENTS (consumed by subscription detection)
# =============================================================================

@dataclass
class TransactionsSyncedEvent(BaseEvent):
    """Published by bank sync when a user's transactions have been refreshed"""

    def __init__(self, user_id: str, account_id: Optional[str] = None,
                 transaction_count: int = 0, **kwargs):
        super().__init__(
            event_id=str(uuid.uuid4()),
            event_type='transactions.sync.completed',
            event_version='1.0',
            timestamp=int(datetime.now().timestamp() * 1000),
            source='bank.sync',
            user_id=user_id,
            data={
                'accountId': account_id,
                'transactionCount': transaction_count,
                **kwargs
            }
        )


@dataclass
class SubscriptionDetectionRequestedEvent(BaseEvent):
    """Published by the scheduler or on demand to request a detection run"""

    def __init__(self, user_id: str, as_of: Optional[int] = None, **kwargs):
        super().__init__(
            event_id=str(uuid.uuid4()),
            event_type='subscription.detection.requested',
            event_version='1.0',
            timestamp=int(datetime.now().timestamp() * 1000),
            source='subscription.scheduler',
            user_id=user_id,
            data={
                'asOf': as_of,
                **kwargs
            }
        )


@dataclass
class SubscriptionCancellationMarkedEvent(BaseEvent):
    """Published when the user marks a subscription as cancelled"""

    def __init__(self, user_id: str, subscription_id: str,
                 cancelled_at: Optional[int] = None, **kwargs):
        super().__init__(
            event_id=str(uuid.uuid4()),
            event_type='subscription.cancellation.marked',
            event_version='1.0',
            timestamp=int(datetime.now().timestamp() * 1000),
            source='subscription.service',
            user_id=user_id,
            data={
                'subscriptionId': subscription_id,
                'cancelledAt': cancelled_at,
                **kwargs
            }
        )


# =============================================================================
# OUTBOUND EVENTS (published by subscription detection)
# =============================================================================

@dataclass
class SubscriptionChangedEvent(BaseEvent):
    """Published for every subscription change a detection run produces"""

    def __init__(self, user_id: str, change_type: str, detail: Dict[str, Any],
                 correlation_id: Optional[str] = None, **kwargs):
        super().__init__(
            event_id=str(uuid.uuid4()),
            event_type=f'subscription.{change_type}',
            event_version='1.0',
            timestamp=int(datetime.now().timestamp() * 1000),
            source=SUBSCRIPTION_EVENT_SOURCE,
            user_id=user_id,
            correlation_id=correlation_id,
            data={
                **detail,
                **kwargs
            }
        )
