"""
Pattern clusterer for subscription detection.

Groups a user's debits into candidate recurring series keyed by
(normalized merchant key, amount bucket).

Amounts of one merchant are bucketed greedily: sorted ascending, a bucket is
anchored on its smallest amount and absorbs every amount up to
``anchor + max(anchor * tolerance_pct, tolerance_floor)``. Each bucket is a
price segment. Segments of one merchant that overlap in time are distinct
concurrent series (two plans); segments that follow each other with a gap that
fits the cadence are one series whose price changed.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

import numpy as np

from models.transaction import Transaction, MS_PER_DAY
from services.subscription_detection.config import ClusteringConfig
from services.subscription_detection.normalizer import MerchantMatch

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def quantize_amount(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def amount_tolerance(amount: Decimal, config: ClusteringConfig) -> Decimal:
    """Absolute drift one bucket absorbs around ``amount``."""
    return max(abs(amount) * config.amount_tolerance_pct, config.amount_tolerance_floor)


def amounts_match(a: Decimal, b: Decimal, config: ClusteringConfig) -> bool:
    return abs(a - b) <= amount_tolerance(min(a, b), config)


@dataclass(frozen=True)
class NormalizedTransaction:
    """A transaction paired with the merchant key it resolved to."""
    transaction: Transaction
    merchant: MerchantMatch

    @property
    def transaction_id(self) -> str:
        return self.transaction.transaction_id

    @property
    def merchant_key(self) -> str:
        return self.merchant.key

    @property
    def date(self) -> int:
        return self.transaction.date

    @property
    def day_number(self) -> int:
        """Proleptic ordinal of the (UTC) calendar day, for day deltas."""
        return self.transaction.day.toordinal()

    @property
    def amount(self) -> Decimal:
        return self.transaction.charge_amount


def _sort_key(item: NormalizedTransaction):
    return (item.date, item.transaction_id)


@dataclass
class PriceSegment:
    """Transactions of one merchant at one price point, in date order."""
    amount_bucket: str
    transactions: List[NormalizedTransaction] = field(default_factory=list)

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_bucket)

    @property
    def count(self) -> int:
        return len(self.transactions)

    @property
    def first_date(self) -> int:
        return self.transactions[0].date

    @property
    def last_date(self) -> int:
        return self.transactions[-1].date

    @property
    def amounts(self) -> List[Decimal]:
        return [t.amount for t in self.transactions]


@dataclass
class TransactionCluster:
    """
    A candidate recurring series: one merchant, one or more chained price segments.
    """
    merchant_key: str
    segments: List[PriceSegment] = field(default_factory=list)

    @property
    def transactions(self) -> List[NormalizedTransaction]:
        return sorted((t for s in self.segments for t in s.transactions), key=_sort_key)

    @property
    def transaction_ids(self) -> List[str]:
        return [t.transaction_id for t in self.transactions]

    @property
    def occurrence_count(self) -> int:
        return sum(s.count for s in self.segments)

    @property
    def dates(self) -> List[int]:
        return [t.date for t in self.transactions]

    @property
    def day_numbers(self) -> List[int]:
        return [t.day_number for t in self.transactions]

    @property
    def first_date(self) -> int:
        return min(s.first_date for s in self.segments)

    @property
    def last_date(self) -> int:
        return max(s.last_date for s in self.segments)

    @property
    def amount_bucket(self) -> str:
        """Bucket of the earliest segment; identifies the series when it is first created."""
        return self.segments[0].amount_bucket

    @property
    def bucket_labels(self) -> List[str]:
        return [s.amount_bucket for s in self.segments]

    @property
    def current_segment(self) -> PriceSegment:
        """
        Latest segment seen at least twice. A trailing one-off price does not
        change the expected amount, it only proves the series is still alive.
        """
        for segment in reversed(self.segments):
            if segment.count >= 2:
                return segment
        return self.segments[-1]

    @property
    def current_amount(self) -> Decimal:
        return self.current_segment.amount

    @property
    def has_price_change(self) -> bool:
        return len([s for s in self.segments if s.count >= 2]) > 1

    @property
    def merchant_confidence(self) -> float:
        return float(np.mean([t.merchant.confidence for t in self.transactions]))

    @property
    def currency(self) -> str:
        return Counter(t.transaction.currency for t in self.transactions).most_common(1)[0][0]

    @property
    def display_name(self) -> str:
        """Most common raw merchant text of the series, title-cased."""
        names = Counter(t.transaction.merchant_text for t in self.transactions if t.transaction.merchant_text)
        if not names:
            return self.merchant_key.title()
        # Ties resolve alphabetically so the name is stable across runs
        best = sorted(names.items(), key=lambda item: (-item[1], item[0]))[0][0]
        return best.title()

    def median_interval_days(self) -> Optional[float]:
        days = self.day_numbers
        if len(days) < 2:
            return None
        return float(np.median(np.diff(days)))


@dataclass
class ClusteringResult:
    """Candidate clusters (two or more occurrences) and unconfirmed singletons."""
    candidates: List[TransactionCluster] = field(default_factory=list)
    unconfirmed: List[TransactionCluster] = field(default_factory=list)

    @property
    def all_clusters(self) -> List[TransactionCluster]:
        return self.candidates + self.unconfirmed


class PatternClusterer:
    """
    Groups normalized transactions into candidate recurring series.

    Pure: no I/O, no clock. The same input always yields the same clusters in
    the same order.
    """

    def __init__(self, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig()

    def eligible(self, txn: Transaction, as_of: int) -> bool:
        """Posted debits inside the lookback window ending at ``as_of``."""
        if txn.pending or not txn.is_debit or txn.date is None:
            return False
        window_start = as_of - self.config.lookback_days * MS_PER_DAY
        return window_start <= txn.date <= as_of

    def cluster(self, normalized_transactions: List[NormalizedTransaction], as_of: int) -> ClusteringResult:
        """
        Cluster a user's normalized transactions.

        Args:
            normalized_transactions: Transactions with their resolved merchant
            as_of: End of the lookback window (milliseconds since epoch)

        Returns:
            ClusteringResult with candidates and unconfirmed singletons
        """
        by_merchant: Dict[str, List[NormalizedTransaction]] = defaultdict(list)
        for item in normalized_transactions:
            if self.eligible(item.transaction, as_of):
                by_merchant[item.merchant_key].append(item)

        result = ClusteringResult()
        for merchant_key in sorted(by_merchant):
            segments = self.bucket_amounts(by_merchant[merchant_key])
            for cluster in self.chain_segments(merchant_key, segments):
                if cluster.occurrence_count >= self.config.min_occurrences:
                    result.candidates.append(cluster)
                else:
                    result.unconfirmed.append(cluster)

        logger.debug(
            f"Clustering complete: {len(result.candidates)} candidates, "
            f"{len(result.unconfirmed)} unconfirmed across {len(by_merchant)} merchants"
        )
        return result

    def bucket_amounts(self, items: List[NormalizedTransaction]) -> List[PriceSegment]:
        """
        Split one merchant's transactions into price segments.

        Returns:
            Segments ordered by first date
        """
        ordered = sorted(items, key=lambda t: (t.amount, t.date, t.transaction_id))

        buckets: List[List[NormalizedTransaction]] = []
        anchor: Optional[Decimal] = None
        for item in ordered:
            if anchor is None or item.amount > anchor + amount_tolerance(anchor, self.config):
                buckets.append([])
                anchor = item.amount
            buckets[-1].append(item)

        segments = []
        for bucket in buckets:
            label = quantize_amount(np.median([float(t.amount) for t in bucket]))
            segments.append(PriceSegment(amount_bucket=str(label), transactions=sorted(bucket, key=_sort_key)))

        segments.sort(key=lambda s: (s.first_date, s.amount))
        return segments

    def chain_segments(self, merchant_key: str, segments: List[PriceSegment]) -> List[TransactionCluster]:
        """
        Chain sequential price segments of one merchant into series.

        A segment continues an existing series when the series has a price seen
        at least twice, the segment starts after the series' last transaction
        and the hand-over gap is at most ``chain_gap_factor`` expected
        intervals. Overlapping segments stay separate series.
        """
        clusters: List[TransactionCluster] = []
        for segment in segments:
            target = None
            for cluster in clusters:
                if cluster.last_date >= segment.first_date:
                    continue
                # Only an established price can be superseded
                if not any(s.count >= 2 for s in cluster.segments):
                    continue
                interval = cluster.median_interval_days() or self._segment_interval(segment)
                if interval is None:
                    continue
                gap_days = segment.transactions[0].day_number - cluster.transactions[-1].day_number
                if gap_days > interval * self.config.chain_gap_factor:
                    continue
                # Prefer the series that ended most recently before this segment
                if target is None or cluster.last_date > target.last_date:
                    target = cluster

            if target is not None:
                logger.debug(
                    f"Chaining price {segment.amount_bucket} onto {merchant_key} series "
                    f"starting at {target.amount_bucket}"
                )
                target.segments.append(segment)
            else:
                clusters.append(TransactionCluster(merchant_key=merchant_key, segments=[segment]))

        return clusters

    @staticmethod
    def _segment_interval(segment: PriceSegment) -> Optional[float]:
        days = [t.day_number for t in segment.transactions]
        if len(days) < 2:
            return None
        return float(np.median(np.diff(days)))
