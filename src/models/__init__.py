"""
Models package for subscription detection.
"""

from .transaction import (
    Transaction,
    timestamp_from_date,
    date_from_timestamp,
)

from .merchant_alias import (
    MerchantAlias,
    AliasSource,
    GLOBAL_NAMESPACE,
)

from .subscription import (
    Subscription,
    SubscriptionFrequency,
    SubscriptionStatus,
    ChangeType,
    SubscriptionChangeEvent,
    DetectionResult,
    UpcomingCharge,
    subscription_id_for,
)

from .events import (
    BaseEvent,
    TransactionsSyncedEvent,
    SubscriptionDetectionRequestedEvent,
    SubscriptionCancellationMarkedEvent,
    SubscriptionChangedEvent,
)
