"""
Lifecycle state machine for detected subscriptions.

    pending_detection -> active -> at_risk -> cancelled
                           ^          |          |
                           +----------+----------+   (reactivated)

Silence-derived states (at risk, cancelled) are a pure function of the days
since the last matching transaction and the expected interval; they are
recomputed on every evaluation and never cached. An explicit user cancellation
is authoritative until a transaction dated after it shows the subscription is
being charged again. No state is terminal.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from models.subscription import (
    Subscription,
    SubscriptionFrequency,
    SubscriptionStatus,
    ChangeType,
)
from models.transaction import date_from_timestamp
from services.subscription_detection.config import DetectionConfig, DEFAULT_CONFIG
from services.subscription_detection.clusterer import amounts_match

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterEvidence:
    """What the current run observed for a subscription's series."""
    last_date: int
    frequency: SubscriptionFrequency
    confidence: float
    promotable: bool
    current_amount: Decimal
    current_amount_confirmed: bool
    """True when the current price was seen at least twice."""


@dataclass(frozen=True)
class LifecycleDecision:
    """Target status of a subscription plus the changes that lead there."""
    status: SubscriptionStatus
    change_type: Optional[ChangeType] = None
    amount: Optional[Decimal] = None
    previous_amount: Optional[Decimal] = None
    silence_days: Optional[int] = None

    @property
    def amount_changed(self) -> bool:
        return self.amount is not None and self.previous_amount is not None

    @property
    def change_types(self) -> List[ChangeType]:
        """Events to emit, status change first."""
        changes = []
        if self.change_type is not None:
            changes.append(self.change_type)
        if self.amount_changed:
            changes.append(ChangeType.AMOUNT_CHANGED)
        return changes


class LifecycleStateMachine:
    """
    Decides the status of existing subscriptions from stored state, fresh
    cluster evidence and the evaluation date.
    """

    def __init__(self, config: Optional[DetectionConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def expected_interval(
        self,
        subscription: Subscription,
        evidence: Optional[ClusterEvidence]
    ) -> Optional[float]:
        """Nominal interval of the evidence's frequency, else of the stored frequency."""
        windows = self.config.frequency_windows
        if evidence is not None:
            interval = windows.nominal_days(evidence.frequency)
            if interval:
                return interval
        return windows.nominal_days(subscription.frequency)

    def cancel_after_days(self, subscription: Subscription) -> Optional[float]:
        """Silence after which the subscription counts as cancelled; None for irregular ones."""
        interval = self.config.frequency_windows.nominal_days(subscription.frequency)
        if interval is None:
            return None
        return interval * self.config.lifecycle.cancel_factor

    def evaluate(
        self,
        subscription: Subscription,
        evidence: Optional[ClusterEvidence],
        as_of: int
    ) -> LifecycleDecision:
        """
        Compute the status ``subscription`` should have at ``as_of``.

        Args:
            subscription: Stored subscription state
            evidence: The matching cluster of this run, if any
            as_of: Evaluation time (milliseconds since epoch)

        Returns:
            LifecycleDecision with the target status and the resulting change events
        """
        current = subscription.status
        last_seen = subscription.last_billing
        if evidence is not None:
            last_seen = max(last_seen, evidence.last_date)

        silence_days = (date_from_timestamp(as_of) - date_from_timestamp(last_seen)).days
        target = self._target_status(subscription, evidence, last_seen, silence_days)

        change_type = self._change_type(current, target)
        if change_type is not None:
            logger.info(
                f"Subscription {str(subscription.subscription_id)} ({subscription.normalized_merchant_key}): "
                f"{current.value} -> {target.value} after {silence_days} days of silence"
            )

        amount, previous_amount = self._amount_change(subscription, evidence, target)
        return LifecycleDecision(
            status=target,
            change_type=change_type,
            amount=amount,
            previous_amount=previous_amount,
            silence_days=silence_days
        )

    def _target_status(
        self,
        subscription: Subscription,
        evidence: Optional[ClusterEvidence],
        last_seen: int,
        silence_days: int
    ) -> SubscriptionStatus:
        if self.user_cancellation_in_effect(subscription, last_seen):
            return SubscriptionStatus.CANCELLED

        interval = self.expected_interval(subscription, evidence)
        if interval is not None:
            if silence_days > interval * self.config.lifecycle.cancel_factor:
                return SubscriptionStatus.CANCELLED
            if silence_days > interval * self.config.lifecycle.at_risk_factor:
                return SubscriptionStatus.AT_RISK

        if evidence is None:
            # Nothing new in the window and still inside the grace period
            if subscription.status == SubscriptionStatus.REACTIVATED:
                return SubscriptionStatus.ACTIVE
            return subscription.status

        if evidence.promotable:
            return SubscriptionStatus.ACTIVE

        # Evidence no longer supports the subscription. Only an active series
        # is downgraded; a cancelled one is not revived into at risk.
        if subscription.status in (SubscriptionStatus.PENDING_DETECTION, SubscriptionStatus.CANCELLED):
            return subscription.status
        return SubscriptionStatus.AT_RISK

    @staticmethod
    def user_cancellation_in_effect(subscription: Subscription, last_seen: int) -> bool:
        """A user cancellation holds until a charge dated after it is observed."""
        if not subscription.cancelled_by_user:
            return False
        if subscription.cancelled_at is None:
            return True
        return last_seen <= subscription.cancelled_at

    @staticmethod
    def _change_type(current: SubscriptionStatus, target: SubscriptionStatus) -> Optional[ChangeType]:
        if current == target:
            return None
        if target == SubscriptionStatus.ACTIVE:
            if current == SubscriptionStatus.PENDING_DETECTION:
                return ChangeType.CREATED
            if current in (SubscriptionStatus.AT_RISK, SubscriptionStatus.CANCELLED):
                return ChangeType.REACTIVATED
            # Legacy REACTIVATED normalizes to ACTIVE silently
            return None
        if target == SubscriptionStatus.AT_RISK:
            return ChangeType.AT_RISK
        if target == SubscriptionStatus.CANCELLED:
            return ChangeType.CANCELLED
        return None

    def _amount_change(
        self,
        subscription: Subscription,
        evidence: Optional[ClusterEvidence],
        target: SubscriptionStatus
    ):
        """
        A confirmed new price on a live series updates the amount. Only a move
        beyond the bucket tolerance is a reportable price change; drift inside
        it just refreshes the stored figure.
        """
        if evidence is None or not evidence.current_amount_confirmed:
            return None, None
        if target != SubscriptionStatus.ACTIVE:
            return None, None
        if evidence.current_amount == subscription.amount:
            return None, None
        if amounts_match(evidence.current_amount, subscription.amount, self.config.clustering):
            return evidence.current_amount, None
        logger.info(
            f"Subscription {str(subscription.subscription_id)} price changed "
            f"{subscription.amount} -> {evidence.current_amount}"
        )
        return evidence.current_amount, subscription.amount

    def mark_cancelled(self, subscription: Subscription, cancelled_at: int) -> LifecycleDecision:
        """
        Apply an explicit user cancellation. Always authoritative: the
        subscription is cancelled immediately regardless of recent activity.
        """
        change_type = None if subscription.status == SubscriptionStatus.CANCELLED else ChangeType.CANCELLED
        logger.info(
            f"Subscription {str(subscription.subscription_id)} marked cancelled by user "
            f"(was {subscription.status.value})"
        )
        return LifecycleDecision(status=SubscriptionStatus.CANCELLED, change_type=change_type)
