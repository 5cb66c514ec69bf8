"""
Subscription Detection Services.

This package turns a user's bank transactions into detected subscriptions and
keeps their lifecycle up to date.

Public API:
    - SubscriptionSynthesizer: Per-user detection, cancellation, analysis and preview
    - BatchDetectionRunner: Concurrent detection over many users
    - MerchantNormalizer: Raw merchant text to normalized merchant keys
    - PatternClusterer: Groups transactions into candidate series
    - FrequencyClassifier / ConfidenceScorer: Per-cluster analyzers
    - LifecycleStateMachine: Subscription status transitions
    - DetectionConfig: Configuration for detection parameters
    - DEFAULT_CONFIG: Default configuration instance
"""

from services.subscription_detection.config import (
    DetectionConfig,
    DEFAULT_CONFIG,
    NormalizerConfig,
    ClusteringConfig,
    FrequencyWindows,
    ConfidenceWeights,
    ScoringConfig,
    LifecycleConfig,
)
from services.subscription_detection.exceptions import (
    DetectionError,
    DataError,
    InvalidInputError,
    DetectionCancelled,
    StorageError,
)
from services.subscription_detection.normalizer import (
    MerchantNormalizer,
    MerchantResolver,
    AliasMerchantResolver,
    EnricherMerchantResolver,
    EnricherSuggestion,
    MerchantMatch,
)
from services.subscription_detection.clusterer import PatternClusterer, TransactionCluster
from services.subscription_detection.analyzers import (
    FrequencyClassifier,
    FrequencyClassification,
    ConfidenceScorer,
    ConfidenceBreakdown,
)
from services.subscription_detection.lifecycle import LifecycleStateMachine, LifecycleDecision
from services.subscription_detection.repository import (
    SubscriptionRepository,
    MerchantAliasRepository,
    TransactionSource,
    DynamoDBSubscriptionRepository,
    DynamoDBMerchantAliasRepository,
    DynamoDBTransactionSource,
)
from services.subscription_detection.synthesizer import SubscriptionSynthesizer, TransactionAnalysis
from services.subscription_detection.batch_runner import BatchDetectionRunner, UserRunOutcome

__all__ = [
    'SubscriptionSynthesizer',
    'TransactionAnalysis',
    'BatchDetectionRunner',
    'UserRunOutcome',
    'MerchantNormalizer',
    'MerchantResolver',
    'AliasMerchantResolver',
    'EnricherMerchantResolver',
    'EnricherSuggestion',
    'MerchantMatch',
    'PatternClusterer',
    'TransactionCluster',
    'FrequencyClassifier',
    'FrequencyClassification',
    'ConfidenceScorer',
    'ConfidenceBreakdown',
    'LifecycleStateMachine',
    'LifecycleDecision',
    'SubscriptionRepository',
    'MerchantAliasRepository',
    'TransactionSource',
    'DynamoDBSubscriptionRepository',
    'DynamoDBMerchantAliasRepository',
    'DynamoDBTransactionSource',
    'DetectionConfig',
    'DEFAULT_CONFIG',
    'NormalizerConfig',
    'ClusteringConfig',
    'FrequencyWindows',
    'ConfidenceWeights',
    'ScoringConfig',
    'LifecycleConfig',
    'DetectionError',
    'DataError',
    'InvalidInputError',
    'DetectionCancelled',
    'StorageError',
]
