"""
Analyzers for subscription detection.

This package provides the analyzers applied to each candidate cluster:
frequency classification and confidence scoring.
"""

from services.subscription_detection.analyzers.frequency import (
    FrequencyClassifier,
    FrequencyClassification,
)
from services.subscription_detection.analyzers.confidence import (
    ConfidenceScorer,
    ConfidenceBreakdown,
)

__all__ = [
    'FrequencyClassifier',
    'FrequencyClassification',
    'ConfidenceScorer',
    'ConfidenceBreakdown',
]
