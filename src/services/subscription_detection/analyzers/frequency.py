"""
Frequency classifier for subscription detection.

Classifies the day deltas of a cluster into a billing frequency.
"""

import math
import logging
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from models.subscription import SubscriptionFrequency
from models.transaction import date_from_timestamp
from services.subscription_detection.config import FrequencyWindows

logger = logging.getLogger(__name__)

UNMATCHED = "unmatched"


@dataclass(frozen=True)
class FrequencyClassification:
    """Outcome of classifying one cluster's dates."""
    frequency: SubscriptionFrequency
    regularity: float
    interval_days: Optional[float]
    mean_interval: float
    provisional: bool
    entropy: float
    agreement: float
    deltas: Tuple[int, ...] = ()
    pauses: Tuple[int, ...] = ()

    @property
    def is_irregular(self) -> bool:
        return self.frequency == SubscriptionFrequency.IRREGULAR

    @property
    def measured(self) -> bool:
        """True when at least one billing interval (a delta that is not a pause) was seen."""
        return len(self.deltas) > len(self.pauses)


class FrequencyClassifier:
    """
    Infers a billing frequency from inter-transaction day deltas.

    Each delta is labelled with the nearest frequency whose window contains it
    (or ``unmatched``). The majority label wins unless the labels disagree too
    much, measured as Shannon entropy in bits, in which case the cluster is
    irregular.
    """

    def __init__(self, windows: Optional[FrequencyWindows] = None):
        """
        Initialize the frequency classifier.

        Args:
            windows: Frequency windows config (creates default if None)
        """
        self.windows = windows or FrequencyWindows()
        self._window_items = list(self.windows.to_dict().items())

    def classify(self, dates: List[int], max_interval_days: Optional[float] = None) -> FrequencyClassification:
        """
        Classify transaction dates (milliseconds since epoch, any order).

        Args:
            dates: Transaction dates
            max_interval_days: Deltas longer than this are pauses of a known
                series, not billing intervals

        Returns:
            FrequencyClassification; fewer than two dates are irregular
        """
        days = sorted(date_from_timestamp(ts).toordinal() for ts in dates)
        return self.classify_days(days, max_interval_days)

    def classify_days(self, days: List[int], max_interval_days: Optional[float] = None) -> FrequencyClassification:
        """Classify sorted day ordinals."""
        if len(days) < 2:
            return self._unmeasured()

        all_deltas = [int(d) for d in np.diff(days)]
        pauses: Tuple[int, ...] = ()
        billing_deltas = all_deltas
        if max_interval_days is not None:
            pauses = tuple(d for d in all_deltas if d > max_interval_days)
            billing_deltas = [d for d in all_deltas if d <= max_interval_days]
            if pauses:
                logger.debug(f"Ignoring pauses {list(pauses)} (longer than {max_interval_days:.1f}d)")
            if not billing_deltas:
                return self._unmeasured(tuple(all_deltas), pauses)

        deltas = self._drop_lapses(billing_deltas)

        labels = [self.label_delta(d) for d in deltas]
        counts = Counter(labels)
        majority, majority_count = self._majority(counts)
        entropy = self._entropy(counts, len(labels))
        regularity = self.regularity(deltas)
        mean_interval = float(np.mean(deltas))

        if majority == UNMATCHED or entropy > self.windows.entropy_threshold:
            frequency = SubscriptionFrequency.IRREGULAR
            interval_days = None
            logger.debug(
                f"Irregular cadence: deltas={all_deltas}, labels={dict(counts)}, entropy={entropy:.3f}"
            )
        else:
            frequency = majority
            interval_days = self.windows.nominal_days(frequency)

        return FrequencyClassification(
            frequency=frequency,
            regularity=regularity,
            interval_days=interval_days,
            mean_interval=mean_interval,
            provisional=len(billing_deltas) == 1,
            entropy=entropy,
            agreement=majority_count / len(labels),
            deltas=tuple(all_deltas),
            pauses=pauses
        )

    def label_delta(self, delta: float):
        """Nearest frequency whose window contains ``delta``, or UNMATCHED."""
        best = None
        for frequency, (nominal, tolerance) in self._window_items:
            distance = abs(delta - nominal)
            if distance <= tolerance and (best is None or distance < best[0]):
                best = (distance, frequency)
        return best[1] if best else UNMATCHED

    def _drop_lapses(self, deltas: List[int]) -> List[int]:
        """
        Ignore gaps far longer than the typical delta (a pause, a skipped
        billing) once there are enough deltas to know what typical is.
        """
        if len(deltas) < self.windows.min_deltas_for_lapse:
            return deltas
        limit = float(np.median(deltas)) * self.windows.lapse_factor
        kept = [d for d in deltas if d <= limit]
        if len(kept) < len(deltas):
            logger.debug(f"Ignoring lapse deltas {[d for d in deltas if d > limit]} (limit {limit:.1f}d)")
        return kept or deltas

    def _majority(self, counts: Counter):
        # Deterministic tie-break: shorter nominal interval first, unmatched last
        order = {frequency: i for i, (frequency, _) in enumerate(self._window_items)}
        ranked = sorted(counts.items(), key=lambda item: (-item[1], order.get(item[0], len(order))))
        return ranked[0]

    @staticmethod
    def _entropy(counts: Counter, total: int) -> float:
        entropy = 0.0
        for count in counts.values():
            p = count / total
            entropy -= p * math.log2(p)
        return entropy

    @staticmethod
    def regularity(deltas: List[int]) -> float:
        """1 - (std / mean) of the deltas, clamped to [0, 1]."""
        if not deltas:
            return 0.0
        mean = float(np.mean(deltas))
        if mean <= 0:
            return 0.0
        return float(min(1.0, max(0.0, 1.0 - float(np.std(deltas)) / mean)))

    @staticmethod
    def _unmeasured(deltas: Tuple[int, ...] = (), pauses: Tuple[int, ...] = ()) -> FrequencyClassification:
        return FrequencyClassification(
            frequency=SubscriptionFrequency.IRREGULAR,
            regularity=0.0,
            interval_days=None,
            mean_interval=0.0,
            provisional=False,
            entropy=0.0,
            agreement=0.0,
            deltas=deltas,
            pauses=pauses
        )
