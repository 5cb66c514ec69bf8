"""
Subscription Synthesizer.

This module orchestrates subscription detection for one user: it turns a raw
transaction set into subscription upserts and change events.

## Detection Pipeline

```mermaid
graph TD
    A[Raw transactions] --> B[Validate + dedupe]
    B --> C[MerchantNormalizer]
    C --> D[PatternClusterer]
    D --> E[FrequencyClassifier]
    E --> F[ConfidenceScorer]
    F --> G[Match stored subscriptions]
    G --> H[LifecycleStateMachine]
    H --> I[Commit upserts]
    I --> J[SubscriptionChangeEvents]
```

Everything up to the commit is computed in memory. A run over the same
transactions with the same ``as_of`` produces no further changes, and a run
that is cancelled leaves every uncommitted cluster untouched.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from models.subscription import (
    ChangeType,
    DetectionResult,
    Subscription,
    SubscriptionChangeEvent,
    SubscriptionStatus,
    UpcomingCharge,
    subscription_id_for,
)
from models.transaction import Transaction, date_from_timestamp, timestamp_from_date
from services.subscription_detection.analyzers import (
    ConfidenceBreakdown,
    ConfidenceScorer,
    FrequencyClassification,
    FrequencyClassifier,
)
from services.subscription_detection.clusterer import (
    ClusteringResult,
    NormalizedTransaction,
    PatternClusterer,
    PriceSegment,
    TransactionCluster,
    amounts_match,
    quantize_amount,
)
from services.subscription_detection.config import DetectionConfig, DEFAULT_CONFIG
from services.subscription_detection.exceptions import (
    DataError,
    DetectionCancelled,
    InvalidInputError,
)
from services.subscription_detection.lifecycle import ClusterEvidence, LifecycleStateMachine
from services.subscription_detection.normalizer import MerchantNormalizer, MerchantResolver
from services.subscription_detection.projection import project_next_billing, projected_billings
from services.subscription_detection.repository import MerchantAliasRepository, SubscriptionRepository
from utils.db.base import NotFound
from utils.performance import DetectionPerformanceTracker

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _txn_order(txn: Transaction):
    return (txn.date, txn.transaction_id)


def validate_transaction(transaction: Transaction) -> Transaction:
    """Raise DataError if ``transaction`` cannot take part in detection."""
    if transaction.date is None:
        raise DataError(f"Transaction {transaction.transaction_id} has no date", transaction.transaction_id)
    if transaction.amount is None:
        raise DataError(f"Transaction {transaction.transaction_id} has no amount", transaction.transaction_id)
    return transaction


@dataclass
class PlannedChange:
    """A subscription state computed in memory, waiting to be committed."""
    subscription: Subscription
    is_new: bool
    status_changed: bool = False
    events: List[SubscriptionChangeEvent] = field(default_factory=list)


@dataclass(frozen=True)
class TransactionAnalysis:
    """How the series a single transaction belongs to looks."""
    transaction_id: str
    merchant_key: str
    occurrence_count: int
    classification: FrequencyClassification
    confidence: ConfidenceBreakdown
    next_billing: Optional[int] = None

    @property
    def is_subscription(self) -> bool:
        return self.confidence.promotable


class SubscriptionSynthesizer:
    """
    Runs detection for one user at a time and persists the outcome.

    Stored subscriptions are matched to fresh clusters by merchant key and
    amount; new series get a deterministic id derived from the user, the
    merchant key and the first amount bucket, so overlapping runs converge on
    the same item.
    """

    def __init__(
        self,
        subscription_repository: SubscriptionRepository,
        alias_repository: MerchantAliasRepository,
        config: Optional[DetectionConfig] = None,
        resolver: Optional[MerchantResolver] = None
    ):
        """
        Initialize the synthesizer.

        Args:
            subscription_repository: Where subscriptions are read and upserted
            alias_repository: Merchant alias store used by the normalizer
            config: Detection configuration (uses DEFAULT_CONFIG if None)
            resolver: Merchant resolution strategy (alias lookup + fuzzy match if None)
        """
        self.subscription_repository = subscription_repository
        self.config = config or DEFAULT_CONFIG
        self.normalizer = MerchantNormalizer(alias_repository, resolver, self.config.normalizer)
        self.clusterer = PatternClusterer(self.config.clustering)
        self.classifier = FrequencyClassifier(self.config.frequency_windows)
        self.scorer = ConfidenceScorer(self.config.scoring, self.config.clustering.min_occurrences)
        self.lifecycle = LifecycleStateMachine(self.config)

    def detect_user_subscriptions(
        self,
        user_id: str,
        transactions: Optional[Iterable[Transaction]],
        as_of: Optional[int] = None,
        cancel_check: Optional[CancelCheck] = None,
        deadline: Optional[float] = None
    ) -> DetectionResult:
        """
        Detect, update and persist a user's subscriptions.

        Args:
            user_id: Owner of the transactions
            transactions: The user's transactions, in any order
            as_of: Evaluation time in milliseconds since epoch (defaults to now)
            cancel_check: Returns True when the caller wants the run stopped
            deadline: Wall-clock time (``time.time()``) after which the run stops

        Returns:
            DetectionResult with the committed subscriptions and their change events

        Raises:
            InvalidInputError: If the transaction set is missing or empty
            DetectionCancelled: If the run was cancelled before finishing
            StorageError: If the repositories fail after retries
        """
        if transactions is None:
            raise InvalidInputError(f"No transaction set supplied for user {user_id}")
        transactions = list(transactions)
        if not transactions:
            raise InvalidInputError(f"Empty transaction set supplied for user {user_id}")

        as_of = as_of if as_of is not None else _now_ms()
        result = DetectionResult(userId=user_id)

        with DetectionPerformanceTracker("detect_user_subscriptions", user_id) as tracker:
            valid = self._valid_transactions(transactions, result)
            tracker.set_transaction_count(len(valid))
            logger.info(
                f"Starting subscription detection for user {user_id} with {len(valid)} transactions "
                f"({len(result.skipped_transactions)} skipped)"
            )

            existing = self._stored_subscriptions(user_id)

            with tracker.stage("normalization"):
                eligible = [t for t in valid if self.clusterer.eligible(t, as_of)]
                matches = self.normalizer.normalize_transactions(
                    user_id,
                    eligible,
                    known_keys=[s.normalized_merchant_key for s in existing]
                )
                normalized = [NormalizedTransaction(t, matches[t.transaction_id]) for t in eligible]

            with tracker.stage("clustering"):
                clustering = self.clusterer.cluster(normalized, as_of)
            result.clusters_evaluated = len(clustering.candidates)
            result.unconfirmed_clusters = len(clustering.unconfirmed)
            tracker.set_clusters_evaluated(len(clustering.candidates))

            with tracker.stage("evaluation"):
                plan = self._plan(user_id, clustering, existing, as_of, result, cancel_check, deadline)

            with tracker.stage("commit"):
                self._commit(user_id, plan, result, cancel_check, deadline)
            tracker.set_subscriptions_changed(len(plan))

        logger.info(
            f"Detection complete for user {user_id}: {len(result.created)} created, "
            f"{len(result.updated)} updated, {len(result.state_changed)} state changes, "
            f"{len(result.events)} events, {result.irregular_clusters} irregular clusters"
        )
        return result

    def refresh_lifecycle(
        self,
        user_id: str,
        as_of: Optional[int] = None,
        cancel_check: Optional[CancelCheck] = None,
        deadline: Optional[float] = None
    ) -> DetectionResult:
        """
        Re-evaluate a user's stored subscriptions from silence alone.

        Used when the lookback window holds no transactions for the user, so
        subscriptions that stopped charging still move to at risk and cancelled.

        Returns:
            DetectionResult with the committed state changes and their events
        """
        as_of = as_of if as_of is not None else _now_ms()
        result = DetectionResult(userId=user_id)

        with DetectionPerformanceTracker("refresh_lifecycle", user_id) as tracker:
            plan: List[PlannedChange] = []
            with tracker.stage("evaluation"):
                for subscription in self._stored_subscriptions(user_id):
                    self._check_cancelled(user_id, cancel_check, deadline, committed=0)
                    change = self._evolve(subscription, as_of)
                    if change is not None:
                        plan.append(change)

            with tracker.stage("commit"):
                self._commit(user_id, plan, result, cancel_check, deadline)
            tracker.set_subscriptions_changed(len(plan))

        logger.info(
            f"Lifecycle refresh complete for user {user_id}: {len(result.state_changed)} state changes, "
            f"{len(result.events)} events"
        )
        return result

    def _stored_subscriptions(self, user_id: str) -> List[Subscription]:
        return sorted(
            self.subscription_repository.list_for_user(user_id),
            key=lambda s: (s.normalized_merchant_key, s.amount_bucket, str(s.subscription_id))
        )

    def _valid_transactions(self, transactions: List[Transaction], result: DetectionResult) -> List[Transaction]:
        """Drop malformed rows (recorded as skipped) and duplicate ids, in date order."""
        valid: Dict[str, Transaction] = {}
        for txn in transactions:
            try:
                validate_transaction(txn)
            except DataError as e:
                logger.warning(f"Skipping transaction: {str(e)}")
                result.skipped_transactions.append(e.transaction_id)
                continue
            valid.setdefault(txn.transaction_id, txn)
        return sorted(valid.values(), key=_txn_order)

    def _plan(
        self,
        user_id: str,
        clustering: ClusteringResult,
        existing: List[Subscription],
        as_of: int,
        result: DetectionResult,
        cancel_check: Optional[CancelCheck],
        deadline: Optional[float]
    ) -> List[PlannedChange]:
        """Compute every upsert of the run without writing anything."""
        by_key: Dict[str, List[Subscription]] = {}
        for subscription in existing:
            by_key.setdefault(subscription.normalized_merchant_key, []).append(subscription)
        taken_ids: Set[uuid.UUID] = {s.subscription_id for s in existing}
        claimed: Set[uuid.UUID] = set()
        plan: List[PlannedChange] = []

        for cluster in clustering.candidates:
            self._check_cancelled(user_id, cancel_check, deadline, committed=0)

            classification = self.classifier.classify(cluster.dates)
            subscription = self._match(cluster, by_key.get(cluster.merchant_key, []), claimed, classification)
            if subscription is not None:
                claimed.add(subscription.subscription_id)
                pause_days = self.lifecycle.cancel_after_days(subscription)
                if pause_days is not None:
                    classification = self.classifier.classify(cluster.dates, max_interval_days=pause_days)

            if classification.is_irregular and classification.measured:
                result.irregular_clusters += 1

            if subscription is not None and not classification.measured:
                # Only pauses between the charges: the series keeps its stored shape
                change = self._evolve(subscription, as_of, cluster)
            elif subscription is not None:
                breakdown = self.scorer.score(cluster, classification)
                change = self._evolve(subscription, as_of, cluster, classification, breakdown)
            else:
                breakdown = self.scorer.score(cluster, classification)
                change = self._create(user_id, cluster, classification, breakdown, as_of, taken_ids)
                if change is not None:
                    taken_ids.add(change.subscription.subscription_id)

            if change is not None:
                plan.append(change)

        # A single charge in the window still proves a known series is alive
        for cluster in clustering.unconfirmed:
            subscription = self._match(cluster, by_key.get(cluster.merchant_key, []), claimed)
            if subscription is None:
                continue
            claimed.add(subscription.subscription_id)
            change = self._evolve(subscription, as_of, cluster)
            if change is not None:
                plan.append(change)

        for subscription in existing:
            if subscription.subscription_id in claimed:
                continue
            change = self._evolve(subscription, as_of)
            if change is not None:
                plan.append(change)

        return plan

    def _match(
        self,
        cluster: TransactionCluster,
        candidates: List[Subscription],
        claimed: Set[uuid.UUID],
        classification: Optional[FrequencyClassification] = None
    ) -> Optional[Subscription]:
        """
        Find the stored subscription a cluster continues.

        Tried in order: a bucket label of the cluster, an amount within
        tolerance of any of its price segments, and (for classified clusters)
        the same frequency with the stored series ending before the cluster's
        current price started.
        """
        available = [s for s in candidates if s.subscription_id not in claimed]
        if not available:
            return None

        labels = set(cluster.bucket_labels)
        for subscription in available:
            if subscription.amount_bucket in labels:
                return subscription

        tolerance_config = self.config.clustering
        for subscription in available:
            if any(amounts_match(subscription.amount, s.amount, tolerance_config) for s in cluster.segments):
                return subscription

        if classification is not None and not classification.is_irregular:
            for subscription in available:
                if (subscription.frequency == classification.frequency
                        and subscription.last_billing < cluster.current_segment.first_date):
                    return subscription
        return None

    def _evidence(
        self,
        subscription: Subscription,
        cluster: TransactionCluster,
        classification: Optional[FrequencyClassification],
        breakdown: Optional[ConfidenceBreakdown]
    ) -> ClusterEvidence:
        if breakdown is None:
            # Unconfirmed singleton: the series keeps its stored shape
            return ClusterEvidence(
                last_date=cluster.last_date,
                frequency=subscription.frequency,
                confidence=float(subscription.detection_confidence),
                promotable=float(subscription.detection_confidence) >= self.config.scoring.promotion_threshold,
                current_amount=cluster.current_amount,
                current_amount_confirmed=False
            )
        return ClusterEvidence(
            last_date=cluster.last_date,
            frequency=classification.frequency,
            confidence=breakdown.confidence,
            promotable=breakdown.promotable,
            current_amount=cluster.current_amount,
            current_amount_confirmed=cluster.current_segment.count >= 2
        )

    def _evolve(
        self,
        subscription: Subscription,
        as_of: int,
        cluster: Optional[TransactionCluster] = None,
        classification: Optional[FrequencyClassification] = None,
        breakdown: Optional[ConfidenceBreakdown] = None
    ) -> Optional[PlannedChange]:
        """Next state of a stored subscription, or None if nothing changes."""
        evidence = None
        if cluster is not None:
            evidence = self._evidence(subscription, cluster, classification, breakdown)
        decision = self.lifecycle.evaluate(subscription, evidence, as_of)

        last_billing = subscription.last_billing
        first_billing = subscription.first_billing or subscription.last_billing
        transaction_ids = list(subscription.transaction_ids)
        frequency = subscription.frequency
        confidence = subscription.detection_confidence
        amount = subscription.amount
        amount_bucket = subscription.amount_bucket

        if cluster is not None:
            last_billing = max(last_billing, cluster.last_date)
            first_billing = min(first_billing, cluster.first_date)
            transaction_ids = sorted(set(transaction_ids) | set(cluster.transaction_ids))
            if breakdown is not None:
                confidence = breakdown.confidence_decimal
                if not classification.is_irregular:
                    frequency = classification.frequency
            if decision.amount is not None:
                amount = decision.amount
                amount_bucket = cluster.current_segment.amount_bucket

        changes = dict(
            status=decision.status,
            last_billing=last_billing,
            first_billing=first_billing,
            transaction_ids=transaction_ids,
            occurrence_count=max(subscription.occurrence_count, len(transaction_ids)),
            frequency=frequency,
            detection_confidence=confidence,
            amount=amount,
            amount_bucket=amount_bucket,
            next_billing=project_next_billing(last_billing, frequency, first_billing)
        )
        status_changed = decision.status != subscription.status
        if status_changed:
            changes['status_changed_at'] = as_of
        if subscription.cancelled_by_user and not self.lifecycle.user_cancellation_in_effect(subscription, last_billing):
            logger.info(
                f"User cancellation of subscription {str(subscription.subscription_id)} lifted by a later charge"
            )
            changes['cancelled_by_user'] = False
            changes['cancelled_at'] = None

        updated = subscription.model_copy(deep=True)
        if not updated.apply_changes(**changes):
            return None

        events = [
            SubscriptionChangeEvent.for_subscription(
                updated,
                change_type,
                decision.previous_amount if change_type == ChangeType.AMOUNT_CHANGED else None
            )
            for change_type in decision.change_types
        ]
        return PlannedChange(subscription=updated, is_new=False, status_changed=status_changed, events=events)

    def _create(
        self,
        user_id: str,
        cluster: TransactionCluster,
        classification: FrequencyClassification,
        breakdown: ConfidenceBreakdown,
        as_of: int,
        taken_ids: Set[uuid.UUID]
    ) -> Optional[PlannedChange]:
        """A new subscription for a promotable cluster nobody owns yet."""
        if not breakdown.promotable:
            logger.debug(
                f"Cluster {cluster.merchant_key}/{cluster.amount_bucket} not promotable "
                f"(confidence {breakdown.confidence}, frequency {classification.frequency.value})"
            )
            return None

        subscription_id = subscription_id_for(user_id, cluster.merchant_key, cluster.amount_bucket)
        if subscription_id in taken_ids:
            subscription_id = subscription_id_for(
                user_id, cluster.merchant_key, f"{cluster.amount_bucket}#{cluster.transaction_ids[0]}"
            )

        subscription = Subscription(
            subscriptionId=subscription_id,
            userId=user_id,
            name=cluster.display_name,
            normalizedMerchantKey=cluster.merchant_key,
            amountBucket=cluster.current_segment.amount_bucket,
            amount=cluster.current_amount,
            currency=cluster.currency,
            frequency=classification.frequency,
            lastBilling=cluster.last_date,
            firstBilling=cluster.first_date,
            nextBilling=project_next_billing(cluster.last_date, classification.frequency, cluster.first_date),
            status=SubscriptionStatus.PENDING_DETECTION,
            detectionConfidence=breakdown.confidence_decimal,
            occurrenceCount=cluster.occurrence_count,
            transactionIds=sorted(cluster.transaction_ids)
        )

        decision = self.lifecycle.evaluate(subscription, self._evidence(subscription, cluster, classification, breakdown), as_of)
        if decision.status == SubscriptionStatus.CANCELLED:
            logger.debug(
                f"Cluster {cluster.merchant_key}/{cluster.amount_bucket} is already stale "
                f"({decision.silence_days} days silent), not creating a subscription"
            )
            return None

        subscription.status = decision.status
        subscription.status_changed_at = as_of
        logger.info(
            f"New subscription {cluster.display_name} ({cluster.merchant_key}) for user {user_id}: "
            f"{subscription.amount} {subscription.currency} {subscription.frequency.value}, "
            f"confidence {breakdown.confidence}"
        )
        return PlannedChange(
            subscription=subscription,
            is_new=True,
            events=[SubscriptionChangeEvent.for_subscription(subscription, ChangeType.CREATED)]
        )

    def _commit(
        self,
        user_id: str,
        plan: List[PlannedChange],
        result: DetectionResult,
        cancel_check: Optional[CancelCheck],
        deadline: Optional[float]
    ):
        committed = 0
        for change in plan:
            self._check_cancelled(user_id, cancel_check, deadline, committed)
            stored = self.subscription_repository.upsert(change.subscription)
            committed += 1

            if change.is_new:
                result.created.append(stored)
            elif change.status_changed:
                result.state_changed.append(stored)
            else:
                result.updated.append(stored)
            result.events.extend(change.events)

    @staticmethod
    def _check_cancelled(
        user_id: str,
        cancel_check: Optional[CancelCheck],
        deadline: Optional[float],
        committed: int
    ):
        if cancel_check is not None and cancel_check():
            logger.warning(f"Detection for user {user_id} cancelled by caller after {committed} commits")
            raise DetectionCancelled(user_id, committed)
        if deadline is not None and time.time() >= deadline:
            logger.warning(f"Detection for user {user_id} hit its deadline after {committed} commits")
            raise DetectionCancelled(user_id, committed)

    def mark_cancelled(
        self,
        user_id: str,
        subscription_id: uuid.UUID,
        cancelled_at: Optional[int] = None
    ) -> Optional[SubscriptionChangeEvent]:
        """
        Record that the user cancelled a subscription.

        Returns:
            The CANCELLED change event, or None if the subscription was already cancelled

        Raises:
            NotFound: If the user has no such subscription
        """
        subscription = self.subscription_repository.get(user_id, subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {str(subscription_id)} not found")

        cancelled_at = cancelled_at if cancelled_at is not None else _now_ms()
        decision = self.lifecycle.mark_cancelled(subscription, cancelled_at)
        changes = dict(status=decision.status, cancelled_by_user=True, cancelled_at=cancelled_at)
        if decision.change_type is not None:
            changes['status_changed_at'] = cancelled_at

        if not subscription.apply_changes(**changes):
            return None
        stored = self.subscription_repository.upsert(subscription)

        if decision.change_type is None:
            return None
        return SubscriptionChangeEvent.for_subscription(stored, decision.change_type)

    def analyze_transaction(
        self,
        user_id: str,
        transaction: Transaction,
        history: Iterable[Transaction]
    ) -> Optional[TransactionAnalysis]:
        """
        Classify the series a single transaction belongs to, without persisting.

        The series is the transaction plus up to ``single_transaction_history``
        of the most recent earlier debits with the same merchant key and a
        matching amount.

        Returns:
            TransactionAnalysis, or None if the transaction is not a debit

        Raises:
            DataError: If the transaction has no date or amount
        """
        validate_transaction(transaction)
        if not transaction.is_debit:
            return None

        earlier = [
            t for t in history
            if t.transaction_id != transaction.transaction_id
            and t.date is not None and t.is_debit and not t.pending
            and t.date <= transaction.date
        ]
        matches = self.normalizer.normalize_transactions(user_id, [transaction] + earlier, record=False)
        merchant_key = matches[transaction.transaction_id].key

        similar = [
            t for t in earlier
            if matches[t.transaction_id].key == merchant_key
            and amounts_match(t.charge_amount, transaction.charge_amount, self.config.clustering)
        ]
        similar.sort(key=_txn_order, reverse=True)
        series = sorted(similar[:self.config.single_transaction_history] + [transaction], key=_txn_order)

        cluster = TransactionCluster(
            merchant_key=merchant_key,
            segments=[PriceSegment(
                amount_bucket=str(quantize_amount(transaction.charge_amount)),
                transactions=[NormalizedTransaction(t, matches[t.transaction_id]) for t in series]
            )]
        )
        classification = self.classifier.classify(cluster.dates)
        breakdown = self.scorer.score(cluster, classification)

        next_billing = None
        if not classification.is_irregular:
            next_billing = project_next_billing(transaction.date, classification.frequency, cluster.first_date)

        return TransactionAnalysis(
            transaction_id=transaction.transaction_id,
            merchant_key=merchant_key,
            occurrence_count=cluster.occurrence_count,
            classification=classification,
            confidence=breakdown,
            next_billing=next_billing
        )

    def preview_upcoming_charges(
        self,
        user_id: str,
        transactions: Optional[Iterable[Transaction]] = None,
        as_of: Optional[int] = None,
        horizon_days: Optional[int] = None
    ) -> List[UpcomingCharge]:
        """
        List the charges a user can expect within ``horizon_days`` of ``as_of``.

        Pending debits that match a live subscription are reported as they are;
        every other expected charge comes from the subscription's projected
        billing dates.
        """
        as_of = as_of if as_of is not None else _now_ms()
        horizon_days = horizon_days if horizon_days is not None else self.config.upcoming_horizon_days

        live = sorted(
            (s for s in self.subscription_repository.list_for_user(user_id) if s.status.is_live),
            key=lambda s: (s.normalized_merchant_key, s.amount_bucket, str(s.subscription_id))
        )
        if not live:
            return []

        pending = sorted(
            (t for t in (transactions or []) if t.pending and t.date is not None and t.is_debit),
            key=_txn_order
        )
        matches = {}
        if pending:
            matches = self.normalizer.normalize_transactions(
                user_id, pending, known_keys=[s.normalized_merchant_key for s in live], record=False
            )

        charges: List[UpcomingCharge] = []
        pending_days: Dict[uuid.UUID, int] = {}
        for txn in pending:
            key = matches[txn.transaction_id].key
            subscription = next(
                (s for s in live
                 if s.normalized_merchant_key == key
                 and s.subscription_id not in pending_days
                 and amounts_match(s.amount, txn.charge_amount, self.config.clustering)),
                None
            )
            if subscription is None:
                continue
            pending_days[subscription.subscription_id] = txn.day.toordinal()
            charges.append(UpcomingCharge(
                subscriptionId=subscription.subscription_id,
                name=subscription.name,
                amount=txn.charge_amount,
                currency=txn.currency,
                expectedDate=txn.date,
                pending=True,
                transactionId=txn.transaction_id
            ))

        from_day = date_from_timestamp(as_of)
        until_day = from_day + timedelta(days=horizon_days)
        for subscription in live:
            interval = self.config.frequency_windows.nominal_days(subscription.frequency) or 0
            pending_day = pending_days.get(subscription.subscription_id)
            for day in projected_billings(subscription, from_day, until_day):
                # The pending charge is this billing
                if pending_day is not None and abs(day.toordinal() - pending_day) <= interval / 2:
                    continue
                charges.append(UpcomingCharge(
                    subscriptionId=subscription.subscription_id,
                    name=subscription.name,
                    amount=subscription.amount,
                    currency=subscription.currency,
                    expectedDate=timestamp_from_date(day),
                    pending=False
                ))

        charges.sort(key=lambda c: (c.expected_date, c.name, str(c.subscription_id)))
        return charges
