"""
Configuration classes for subscription detection.

Centralizes all tolerances, windows, weights and thresholds used in the
detection pipeline. The defaults are product-tuning values; every one of them
can be overridden in code or, for the common knobs, from the environment.
"""

import os
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Tuple, Optional

from models.subscription import SubscriptionFrequency

logger = logging.getLogger(__name__)


@dataclass
class NormalizerConfig:
    """Configuration for merchant normalization and fuzzy matching."""

    max_edit_distance: int = 2
    """Maximum Levenshtein distance for a fuzzy match against a known key."""

    min_token_jaccard: float = 0.8
    """Minimum token-set Jaccard similarity for a fuzzy match."""

    min_fuzzy_key_length: int = 5
    """Keys shorter than this are only matched exactly (edit distance is meaningless on 'BP')."""

    verified_alias_confidence: float = 1.0
    fuzzy_match_confidence: float = 0.8
    new_key_confidence: float = 0.7
    """Merchant-match confidence reported for each way a key can be resolved."""

    enricher_timeout_seconds: float = 2.0
    """Upper bound on a call to the optional merchant enricher."""


@dataclass
class ClusteringConfig:
    """Configuration for grouping transactions into candidate series."""

    lookback_days: int = 180
    """Only transactions this many days before ``as_of`` are clustered."""

    amount_tolerance_pct: Decimal = Decimal("0.05")
    """Relative amount drift absorbed by one amount bucket."""

    amount_tolerance_floor: Decimal = Decimal("0.50")
    """Absolute minimum tolerance, so small amounts still absorb rounding."""

    min_occurrences: int = 2
    """Minimum number of transactions for a cluster to become a detection candidate."""

    chain_gap_factor: float = 1.5
    """
    A later price point of the same merchant continues an earlier one (price change)
    when the hand-over gap is at most this many expected intervals.
    """

    def __post_init__(self):
        if not isinstance(self.amount_tolerance_pct, Decimal):
            self.amount_tolerance_pct = Decimal(str(self.amount_tolerance_pct))
        if not isinstance(self.amount_tolerance_floor, Decimal):
            self.amount_tolerance_floor = Decimal(str(self.amount_tolerance_floor))
        if self.amount_tolerance_pct < 0 or self.amount_tolerance_floor < 0:
            raise ValueError("Amount tolerances must not be negative")
        if self.min_occurrences < 2:
            raise ValueError(f"min_occurrences must be at least 2, got {self.min_occurrences}")


@dataclass
class FrequencyWindows:
    """
    Nominal interval and tolerance window (days) per frequency.

    Each window is a tuple of (nominal_days, tolerance_days); a delta matches
    the frequency when it lies within nominal +/- tolerance.
    """

    weekly: Tuple[float, float] = (7, 2)
    biweekly: Tuple[float, float] = (14, 2)
    monthly: Tuple[float, float] = (30, 4)
    quarterly: Tuple[float, float] = (91, 7)
    yearly: Tuple[float, float] = (365, 15)

    entropy_threshold: float = 0.5
    """Label entropy (bits) above which a cluster is irregular."""

    lapse_factor: float = 2.5
    """Deltas longer than this many median deltas are lapses, not billing intervals."""

    min_deltas_for_lapse: int = 3
    """Lapse detection needs enough deltas for the median to be meaningful."""

    def to_dict(self) -> Dict[SubscriptionFrequency, Tuple[float, float]]:
        """
        Convert windows to a dictionary mapping frequency enum to (nominal, tolerance).

        Returns:
            Dictionary mapping SubscriptionFrequency to (nominal_days, tolerance_days)
        """
        return {
            SubscriptionFrequency.WEEKLY: self.weekly,
            SubscriptionFrequency.BIWEEKLY: self.biweekly,
            SubscriptionFrequency.MONTHLY: self.monthly,
            SubscriptionFrequency.QUARTERLY: self.quarterly,
            SubscriptionFrequency.YEARLY: self.yearly,
        }

    def nominal_days(self, frequency: SubscriptionFrequency) -> Optional[float]:
        window = self.to_dict().get(frequency)
        return window[0] if window else None


@dataclass
class ConfidenceWeights:
    """
    Weights for multi-factor confidence score calculation.

    All weights must sum to 1.0 for proper normalization.
    """

    occurrence: float = 0.30
    """Weight for the saturating occurrence-count factor."""

    regularity: float = 0.30
    """Weight for interval regularity (how consistent are the date deltas)."""

    amount_consistency: float = 0.20
    """Weight for amount consistency within the current price point."""

    merchant: float = 0.20
    """Weight for the merchant-match confidence reported by the normalizer."""

    def __post_init__(self):
        """Validate that weights sum to 1.0."""
        total = self.occurrence + self.regularity + self.amount_consistency + self.merchant
        if abs(total - 1.0) > 0.001:
            raise ValueError(
                f"Confidence weights must sum to 1.0, got {total}. "
                f"Weights: occurrence={self.occurrence}, "
                f"regularity={self.regularity}, "
                f"amount={self.amount_consistency}, "
                f"merchant={self.merchant}"
            )


@dataclass
class ScoringConfig:
    """Configuration for confidence scoring and promotion."""

    weights: ConfidenceWeights = field(default_factory=ConfidenceWeights)

    occurrence_saturation: int = 4
    """Occurrence count at which the occurrence factor reaches 1.0."""

    provisional_penalty: float = 0.8
    """Multiplier applied to clusters classified from a single delta."""

    promotion_threshold: float = 0.6
    """Minimum confidence for a cluster to become or stay an active subscription."""

    def __post_init__(self):
        if not 0.0 <= self.promotion_threshold <= 1.0:
            raise ValueError(f"promotion_threshold must be within [0, 1], got {self.promotion_threshold}")
        if not 0.0 < self.provisional_penalty <= 1.0:
            raise ValueError(f"provisional_penalty must be within (0, 1], got {self.provisional_penalty}")


@dataclass
class LifecycleConfig:
    """Grace windows, in multiples of the expected interval."""

    at_risk_factor: float = 1.5
    """Silence longer than this many intervals moves an active subscription to at risk."""

    cancel_factor: float = 2.5
    """Silence longer than this many intervals cancels the subscription."""

    def __post_init__(self):
        if self.cancel_factor <= self.at_risk_factor:
            raise ValueError(
                f"cancel_factor ({self.cancel_factor}) must exceed at_risk_factor ({self.at_risk_factor})"
            )


class DetectionConfig:
    """
    Master configuration for subscription detection.

    Aggregates all configuration classes into a single configuration object.
    """

    def __init__(
        self,
        normalizer: Optional[NormalizerConfig] = None,
        clustering: Optional[ClusteringConfig] = None,
        frequency_windows: Optional[FrequencyWindows] = None,
        scoring: Optional[ScoringConfig] = None,
        lifecycle: Optional[LifecycleConfig] = None,
        max_workers: int = 4,
        single_transaction_history: int = 12,
        upcoming_horizon_days: int = 30
    ):
        """
        Initialize detection configuration.

        Args:
            normalizer: Merchant normalization config (creates default if None)
            clustering: Clustering config (creates default if None)
            frequency_windows: Frequency windows config (creates default if None)
            scoring: Confidence scoring config (creates default if None)
            lifecycle: Lifecycle grace windows (creates default if None)
            max_workers: Upper bound on users processed concurrently by a batch run
            single_transaction_history: Similar transactions considered when analysing one transaction
            upcoming_horizon_days: Default horizon of the upcoming-charge preview
        """
        self.normalizer = normalizer or NormalizerConfig()
        self.clustering = clustering or ClusteringConfig()
        self.frequency_windows = frequency_windows or FrequencyWindows()
        self.scoring = scoring or ScoringConfig()
        self.lifecycle = lifecycle or LifecycleConfig()
        self.max_workers = max_workers
        self.single_transaction_history = single_transaction_history
        self.upcoming_horizon_days = upcoming_horizon_days

        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        """
        Build a configuration from defaults overridden by environment variables.

        Recognised variables:
            SUBSCRIPTION_LOOKBACK_DAYS, SUBSCRIPTION_AMOUNT_TOLERANCE_PCT,
            SUBSCRIPTION_PROMOTION_THRESHOLD, SUBSCRIPTION_DETECTION_WORKERS
        """
        clustering = ClusteringConfig(
            lookback_days=int(os.environ.get('SUBSCRIPTION_LOOKBACK_DAYS', '180')),
            amount_tolerance_pct=Decimal(os.environ.get('SUBSCRIPTION_AMOUNT_TOLERANCE_PCT', '0.05'))
        )
        scoring = ScoringConfig(
            promotion_threshold=float(os.environ.get('SUBSCRIPTION_PROMOTION_THRESHOLD', '0.6'))
        )
        max_workers = int(os.environ.get('SUBSCRIPTION_DETECTION_WORKERS', '4'))

        logger.debug(
            f"Detection config from env: lookback={clustering.lookback_days}d, "
            f"tolerance={clustering.amount_tolerance_pct}, "
            f"threshold={scoring.promotion_threshold}, workers={max_workers}"
        )
        return cls(clustering=clustering, scoring=scoring, max_workers=max_workers)


# Default configuration instance
DEFAULT_CONFIG = DetectionConfig()
