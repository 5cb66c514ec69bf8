"""
Confidence scorer for subscription detection.

Calculates the multi-factor detection confidence of a cluster.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

import numpy as np

from services.subscription_detection.analyzers.frequency import FrequencyClassification
from services.subscription_detection.clusterer import TransactionCluster
from services.subscription_detection.config import ScoringConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfidenceBreakdown:
    """Detection confidence and the factors it was computed from."""
    confidence: float
    occurrence_factor: float
    regularity: float
    amount_consistency: float
    merchant_confidence: float
    provisional_penalty_applied: bool
    promotable: bool

    @property
    def confidence_decimal(self) -> Decimal:
        return Decimal(str(round(self.confidence, 4)))


class ConfidenceScorer:
    """
    Calculates confidence scores for candidate clusters.

    Considers:
    - Occurrence count (saturating at ``occurrence_saturation``)
    - Interval regularity (from the frequency classification)
    - Amount consistency (how stable is the current price)
    - Merchant-match confidence (how the merchant key was resolved)

    Irregular clusters and clusters below ``min_occurrences`` are never promotable.
    """

    def __init__(self, config: Optional[ScoringConfig] = None, min_occurrences: int = 2):
        """
        Initialize the confidence scorer.

        Args:
            config: Scoring config with weights, saturation, penalty and threshold.
                    If None, uses defaults (30%, 30%, 20%, 20%; threshold 0.6)
            min_occurrences: Occurrences required before a cluster can be promoted
        """
        self.config = config or ScoringConfig()
        self.weights = self.config.weights
        self.min_occurrences = min_occurrences

    def score(
        self,
        cluster: TransactionCluster,
        classification: FrequencyClassification,
        merchant_confidence: Optional[float] = None
    ) -> ConfidenceBreakdown:
        """
        Calculate the detection confidence (0.0-1.0) of a cluster.

        Args:
            cluster: Candidate cluster
            classification: Frequency classification of the cluster's dates
            merchant_confidence: Merchant-match confidence; defaults to the cluster's own

        Returns:
            ConfidenceBreakdown with the weighted score and its factors
        """
        if merchant_confidence is None:
            merchant_confidence = cluster.merchant_confidence
        merchant_confidence = min(1.0, max(0.0, merchant_confidence))

        occurrence_factor = self.occurrence_factor(cluster.occurrence_count)
        regularity = classification.regularity
        amount_consistency = self.amount_consistency(cluster.current_segment.amounts)

        confidence = (
            self.weights.occurrence * occurrence_factor +
            self.weights.regularity * regularity +
            self.weights.amount_consistency * amount_consistency +
            self.weights.merchant * merchant_confidence
        )

        penalized = classification.provisional
        if penalized:
            confidence *= self.config.provisional_penalty

        confidence = round(min(1.0, max(0.0, confidence)), 4)
        promotable = (
            not classification.is_irregular
            and cluster.occurrence_count >= self.min_occurrences
            and confidence >= self.config.promotion_threshold
        )

        return ConfidenceBreakdown(
            confidence=confidence,
            occurrence_factor=occurrence_factor,
            regularity=regularity,
            amount_consistency=amount_consistency,
            merchant_confidence=merchant_confidence,
            provisional_penalty_applied=penalized,
            promotable=promotable
        )

    def occurrence_factor(self, count: int) -> float:
        return min(1.0, count / self.config.occurrence_saturation)

    @staticmethod
    def amount_consistency(amounts: List[Decimal]) -> float:
        """
        1 - (std / mean) of the amounts, clamped to [0, 1].
        """
        if not amounts:
            return 0.0
        values = [float(a) for a in amounts]
        mean = float(np.mean(values))
        if mean <= 0:
            return 0.0
        return float(min(1.0, max(0.0, 1.0 - float(np.std(values)) / mean)))
