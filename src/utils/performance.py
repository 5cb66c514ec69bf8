"""
Performance tracking for subscription detection runs.

Records total elapsed time and per-stage timings (normalization, clustering,
classification, commit) of a detection run and logs them with a level that
reflects how slow the run was.
"""

import time
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

SLOW_RUN_WARN_MS = 10000
SLOW_RUN_ERROR_MS = 30000


@dataclass
class DetectionRunMetrics:
    """Container for detection run performance metrics."""
    operation_name: str
    user_id: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    elapsed_ms: Optional[float] = None
    transaction_count: int = 0
    clusters_evaluated: int = 0
    subscriptions_changed: int = 0
    stage_ms: Dict[str, float] = field(default_factory=dict)

    def finish(self):
        """Mark the run as finished and calculate elapsed time."""
        self.end_time = time.time()
        self.elapsed_ms = (self.end_time - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for logging."""
        return {
            'operation_name': self.operation_name,
            'user_id': self.user_id,
            'elapsed_ms': self.elapsed_ms,
            'transaction_count': self.transaction_count,
            'clusters_evaluated': self.clusters_evaluated,
            'subscriptions_changed': self.subscriptions_changed,
            'stage_ms': dict(self.stage_ms),
            'timestamp': datetime.now(timezone.utc).isoformat()
        }

    def log_metrics(self, failed: bool = False):
        """Log the performance metrics."""
        metrics = self.to_dict()
        elapsed = self.elapsed_ms or 0.0

        if failed:
            logger.warning(
                f"Detection run {self.operation_name} failed after {elapsed:.2f}ms",
                extra={'detection_metrics': metrics}
            )
        elif elapsed > SLOW_RUN_ERROR_MS:
            logger.error(
                f"SLOW DETECTION RUN: {self.operation_name} took {elapsed:.2f}ms",
                extra={'detection_metrics': metrics}
            )
        elif elapsed > SLOW_RUN_WARN_MS:
            logger.warning(
                f"Slow detection run: {self.operation_name} took {elapsed:.2f}ms",
                extra={'detection_metrics': metrics}
            )
        else:
            logger.info(
                f"Detection run completed: {self.operation_name} in {elapsed:.2f}ms "
                f"({self.transaction_count} transactions, {self.clusters_evaluated} clusters, "
                f"{self.subscriptions_changed} changes)",
                extra={'detection_metrics': metrics}
            )

        if self.stage_ms:
            breakdown = ', '.join(f"{stage}: {ms:.2f}ms" for stage, ms in self.stage_ms.items())
            logger.debug(
                f"Detection run breakdown for {self.operation_name}: {breakdown}",
                extra={'detection_metrics': metrics}
            )


class _StageTimer:
    def __init__(self, metrics: DetectionRunMetrics, stage: str):
        self.metrics = metrics
        self.stage = stage
        self.start_time: float = 0.0

    def __enter__(self):
        self.start_time = time.time()
        logger.debug(f"Starting stage: {self.stage}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed_ms = (time.time() - self.start_time) * 1000
        # Stages entered more than once (per cluster) accumulate
        self.metrics.stage_ms[self.stage] = self.metrics.stage_ms.get(self.stage, 0.0) + elapsed_ms
        logger.debug(f"Completed stage {self.stage} in {elapsed_ms:.2f}ms")


class DetectionPerformanceTracker:
    """
    Context manager for detection run performance tracking.

    Usage:
        with DetectionPerformanceTracker("detect_user_subscriptions", user_id) as tracker:
            tracker.set_transaction_count(len(transactions))

            with tracker.stage('clustering'):
                clusters = clusterer.cluster(normalized, as_of)
            tracker.set_clusters_evaluated(len(clusters.candidates))
    """

    def __init__(self, operation_name: str, user_id: Optional[str] = None):
        self.metrics = DetectionRunMetrics(operation_name=operation_name, user_id=user_id)

    def __enter__(self):
        logger.debug(f"Starting detection run: {self.metrics.operation_name} for user {self.metrics.user_id}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.metrics.finish()
        self.metrics.log_metrics(failed=exc_type is not None)

    def stage(self, stage_name: str) -> _StageTimer:
        """Create a context manager for tracking a stage."""
        return _StageTimer(self.metrics, stage_name)

    def set_transaction_count(self, count: int):
        self.metrics.transaction_count = count

    def set_clusters_evaluated(self, count: int):
        self.metrics.clusters_evaluated = count

    def set_subscriptions_changed(self, count: int):
        self.metrics.subscriptions_changed = count
