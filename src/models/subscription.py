"""
Subscription Models.

This module provides Pydantic models for detected subscriptions, their billing
frequency and lifecycle status, and the change events emitted when detection
creates or transitions a subscription.
"""

import uuid
import logging
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing_extensions import Self

logger = logging.getLogger(__name__)

TIMESTAMP_ERROR_MESSAGE = "Timestamp must be a positive integer representing milliseconds since epoch"

# Namespace for deterministic subscription ids; concurrent runs for the same
# user derive the same id for the same series and converge on one item.
SUBSCRIPTION_ID_NAMESPACE = uuid.UUID("6f1c2a3e-8d4b-5e7f-9a0b-1c2d3e4f5a6b")


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class SubscriptionFrequency(str, Enum):
    """Billing frequency of a subscription."""
    WEEKLY = "weekly"          # ~7 day intervals
    BIWEEKLY = "biweekly"      # ~14 day intervals
    MONTHLY = "monthly"        # ~30 day intervals
    QUARTERLY = "quarterly"    # ~91 day intervals
    YEARLY = "yearly"          # ~365 day intervals
    IRREGULAR = "irregular"    # no clear interval


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscription."""
    PENDING_DETECTION = "pending_detection"
    ACTIVE = "active"
    AT_RISK = "at_risk"
    CANCELLED = "cancelled"
    REACTIVATED = "reactivated"  # legacy value, treated like ACTIVE

    @property
    def is_live(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.REACTIVATED)


class ChangeType(str, Enum):
    """Kind of change recorded for a subscription."""
    CREATED = "created"
    AMOUNT_CHANGED = "amount_changed"
    AT_RISK = "at_risk"
    CANCELLED = "cancelled"
    REACTIVATED = "reactivated"


def subscription_id_for(user_id: str, merchant_key: str, amount_bucket: str) -> uuid.UUID:
    """Deterministic id for the series identified by (user, merchant key, amount bucket)."""
    return uuid.uuid5(SUBSCRIPTION_ID_NAMESPACE, f"{user_id}|{merchant_key}|{amount_bucket}")


class Subscription(BaseModel):
    """
    A recurring charge detected from a user's transactions.

    Subscriptions are never deleted by detection, only moved to ``cancelled``.
    ``transaction_ids`` is the back-reference to the transactions that make up
    the series; a transaction belongs to at most one subscription.
    """
    subscription_id: uuid.UUID = Field(default_factory=uuid.uuid4, alias="subscriptionId")
    user_id: str = Field(alias="userId")
    name: str

    # Series identification
    normalized_merchant_key: str = Field(alias="normalizedMerchantKey")
    amount_bucket: str = Field(alias="amountBucket")

    # Billing
    amount: Decimal
    currency: str = Field(default="USD")
    frequency: SubscriptionFrequency = Field(default=SubscriptionFrequency.IRREGULAR)
    next_billing: Optional[int] = Field(default=None, alias="nextBilling")
    last_billing: int = Field(alias="lastBilling")
    first_billing: Optional[int] = Field(default=None, alias="firstBilling")

    # Detection state
    status: SubscriptionStatus = Field(default=SubscriptionStatus.PENDING_DETECTION)
    detection_confidence: Decimal = Field(default=Decimal("0"), alias="detectionConfidence", ge=0, le=1)
    occurrence_count: int = Field(default=0, alias="occurrenceCount", ge=0)
    transaction_ids: List[str] = Field(default_factory=list, alias="transactionIds")

    # Explicit user cancellation, authoritative over inferred state
    cancelled_by_user: bool = Field(default=False, alias="cancelledByUser")
    cancelled_at: Optional[int] = Field(default=None, alias="cancelledAt")

    status_changed_at: Optional[int] = Field(default=None, alias="statusChangedAt")
    created_at: int = Field(default_factory=_now_ms, alias="createdAt")
    updated_at: int = Field(default_factory=_now_ms, alias="updatedAt")

    model_config = ConfigDict(
        populate_by_name=True,
        json_encoders={
            Decimal: str,
            uuid.UUID: str
        },
        use_enum_values=False
    )

    @field_validator('amount', 'detection_confidence', mode='before')
    @classmethod
    def ensure_decimal(cls, v: Any) -> Decimal:
        if not isinstance(v, Decimal):
            return Decimal(str(v))
        return v

    @field_validator('next_billing', 'last_billing', 'first_billing', 'cancelled_at',
                     'status_changed_at', 'created_at', 'updated_at')
    @classmethod
    def check_positive_timestamp(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError(TIMESTAMP_ERROR_MESSAGE)
        return v

    @property
    def upsert_key(self) -> str:
        """Storage key of the series: merchant key and amount bucket."""
        return f"{self.normalized_merchant_key}#{self.amount_bucket}"

    def apply_changes(self, **changes: Any) -> bool:
        """
        Set the given fields, touching ``updated_at`` only if something changed.

        Returns True if any field changed, False otherwise.
        """
        updated_fields = False
        for key, value in changes.items():
            if key in ("subscription_id", "user_id", "created_at"):
                continue
            if getattr(self, key) != value:
                setattr(self, key, value)
                updated_fields = True

        if updated_fields:
            self.updated_at = _now_ms()
        return updated_fields

    def to_dynamodb_item(self) -> Dict[str, Any]:
        """Convert to DynamoDB item format."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        data['subscriptionId'] = str(self.subscription_id)
        data['frequency'] = self.frequency.value
        data['status'] = self.status.value
        data['cancelledByUser'] = 'true' if self.cancelled_by_user else 'false'
        data['upsertKey'] = self.upsert_key
        return data

    @classmethod
    def from_dynamodb_item(cls, data: Dict[str, Any]) -> Self:
        """Create from DynamoDB item data."""
        converted_data = data.copy()
        converted_data.pop('upsertKey', None)

        int_fields = ['nextBilling', 'lastBilling', 'firstBilling', 'cancelledAt',
                      'statusChangedAt', 'createdAt', 'updatedAt', 'occurrenceCount']
        for field in int_fields:
            if isinstance(converted_data.get(field), Decimal):
                converted_data[field] = int(converted_data[field])

        if isinstance(converted_data.get('subscriptionId'), str):
            converted_data['subscriptionId'] = uuid.UUID(converted_data['subscriptionId'])

        if isinstance(converted_data.get('frequency'), str):
            try:
                converted_data['frequency'] = SubscriptionFrequency(converted_data['frequency'])
            except ValueError:
                logger.warning(f"Invalid SubscriptionFrequency value: {converted_data['frequency']}")
                converted_data['frequency'] = SubscriptionFrequency.IRREGULAR

        if isinstance(converted_data.get('status'), str):
            try:
                converted_data['status'] = SubscriptionStatus(converted_data['status'])
            except ValueError:
                logger.warning(f"Invalid SubscriptionStatus value: {converted_data['status']}")
                converted_data['status'] = SubscriptionStatus.PENDING_DETECTION

        if isinstance(converted_data.get('cancelledByUser'), str):
            converted_data['cancelledByUser'] = converted_data['cancelledByUser'].lower() == 'true'

        if 'transactionIds' in converted_data and converted_data['transactionIds'] is not None:
            converted_data['transactionIds'] = [str(tid) for tid in converted_data['transactionIds']]

        return cls.model_validate(converted_data)


class SubscriptionChangeEvent(BaseModel):
    """A created/amount-changed/at-risk/cancelled/reactivated notification for one subscription."""
    subscription_id: uuid.UUID = Field(alias="subscriptionId")
    change_type: ChangeType = Field(alias="changeType")
    subscription: Subscription
    previous_amount: Optional[Decimal] = Field(default=None, alias="previousAmount")
    occurred_at: int = Field(default_factory=_now_ms, alias="occurredAt")

    model_config = ConfigDict(
        populate_by_name=True,
        json_encoders={
            Decimal: str,
            uuid.UUID: str
        }
    )

    @classmethod
    def for_subscription(
        cls,
        subscription: Subscription,
        change_type: ChangeType,
        previous_amount: Optional[Decimal] = None
    ) -> "SubscriptionChangeEvent":
        return cls(
            subscriptionId=subscription.subscription_id,
            changeType=change_type,
            subscription=subscription.model_copy(deep=True),
            previousAmount=previous_amount
        )

    def to_event_detail(self) -> Dict[str, Any]:
        """JSON-safe payload for publishing."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DetectionResult(BaseModel):
    """Outcome of one detection run for one user."""
    user_id: str = Field(alias="userId")
    created: List[Subscription] = Field(default_factory=list)
    updated: List[Subscription] = Field(default_factory=list)
    state_changed: List[Subscription] = Field(default_factory=list, alias="stateChanged")
    events: List[SubscriptionChangeEvent] = Field(default_factory=list)
    skipped_transactions: List[str] = Field(default_factory=list, alias="skippedTransactions")
    clusters_evaluated: int = Field(default=0, alias="clustersEvaluated")
    irregular_clusters: int = Field(default=0, alias="irregularClusters")
    unconfirmed_clusters: int = Field(default=0, alias="unconfirmedClusters")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.updated or self.state_changed)


class UpcomingCharge(BaseModel):
    """A charge expected within a preview horizon: a pending transaction or a projected billing."""
    subscription_id: uuid.UUID = Field(alias="subscriptionId")
    name: str
    amount: Decimal
    currency: str = Field(default="USD")
    expected_date: int = Field(alias="expectedDate")
    pending: bool = Field(default=False)
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")

    model_config = ConfigDict(
        populate_by_name=True,
        json_encoders={
            Decimal: str,
            uuid.UUID: str
        }
    )
