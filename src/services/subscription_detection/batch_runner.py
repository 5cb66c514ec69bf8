"""
Batch detection over many users.

Users are independent: each one is processed on a bounded thread pool and a
failure for one user is captured in its outcome without affecting the others.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List, Optional

from models.subscription import DetectionResult
from models.transaction import MS_PER_DAY
from services.subscription_detection.config import DetectionConfig, DEFAULT_CONFIG
from services.subscription_detection.exceptions import (
    DetectionCancelled,
    StorageError,
)
from services.subscription_detection.repository import TransactionSource
from services.subscription_detection.synthesizer import CancelCheck, SubscriptionSynthesizer

logger = logging.getLogger(__name__)


@dataclass
class UserRunOutcome:
    """What happened to one user in a batch run."""
    user_id: str
    result: Optional[DetectionResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    cancelled: bool = False
    events_published: int = 0

    @property
    def succeeded(self) -> bool:
        return self.result is not None


class BatchDetectionRunner:
    """Runs subscription detection for a list of users."""

    def __init__(
        self,
        transaction_source: TransactionSource,
        synthesizer: SubscriptionSynthesizer,
        config: Optional[DetectionConfig] = None,
        event_service=None
    ):
        """
        Initialize the batch runner.

        Args:
            transaction_source: Supplies each user's transactions
            synthesizer: Runs detection for one user
            config: Detection configuration (uses DEFAULT_CONFIG if None)
            event_service: Optional EventService; change events are published when given
        """
        self.transaction_source = transaction_source
        self.synthesizer = synthesizer
        self.config = config or DEFAULT_CONFIG
        self.event_service = event_service

    def run(
        self,
        user_ids: Iterable[str],
        as_of: Optional[int] = None,
        deadline: Optional[float] = None,
        cancel_check: Optional[CancelCheck] = None
    ) -> List[UserRunOutcome]:
        """
        Detect subscriptions for every user.

        Args:
            user_ids: Users to process; duplicates are processed once
            as_of: Evaluation time in milliseconds since epoch (defaults to now)
            deadline: Wall-clock time (``time.time()``) after which unfinished users are cancelled
            cancel_check: Returns True when the whole batch should stop

        Returns:
            One UserRunOutcome per distinct user, in input order
        """
        users = list(dict.fromkeys(user_ids))
        if not users:
            return []
        as_of = as_of if as_of is not None else int(time.time() * 1000)

        workers = min(self.config.max_workers, len(users))
        logger.info(f"Starting batch detection for {len(users)} users with {workers} workers")

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self.run_user, user_id, as_of, deadline, cancel_check)
                for user_id in users
            ]
            outcomes = [future.result() for future in futures]

        failed = sum(1 for o in outcomes if o.error is not None)
        cancelled = sum(1 for o in outcomes if o.cancelled)
        logger.info(
            f"Batch detection complete: {len(outcomes) - failed - cancelled}/{len(outcomes)} users succeeded, "
            f"{failed} failed, {cancelled} cancelled"
        )
        return outcomes

    def run_user(
        self,
        user_id: str,
        as_of: int,
        deadline: Optional[float] = None,
        cancel_check: Optional[CancelCheck] = None
    ) -> UserRunOutcome:
        """Detect subscriptions for one user; never raises."""
        outcome = UserRunOutcome(user_id=user_id)
        start_date_ts = as_of - self.config.clustering.lookback_days * MS_PER_DAY
        try:
            transactions = self.transaction_source.list_transactions(
                user_id, start_date_ts=start_date_ts, end_date_ts=as_of
            )
            if not transactions:
                logger.info(f"No transactions in the lookback window for user {user_id}, refreshing lifecycle only")
                outcome.result = self.synthesizer.refresh_lifecycle(
                    user_id, as_of=as_of, cancel_check=cancel_check, deadline=deadline
                )
            else:
                outcome.result = self.synthesizer.detect_user_subscriptions(
                    user_id,
                    transactions,
                    as_of=as_of,
                    cancel_check=cancel_check,
                    deadline=deadline
                )
        except DetectionCancelled as e:
            outcome.cancelled = True
            outcome.error_type = type(e).__name__
            return outcome
        except StorageError as e:
            logger.error(
                f"Storage failure during detection for user {user_id}: {str(e)}",
                exc_info=True,
                extra={'user_id': user_id, 'operation': e.operation, 'error_code': e.error_code}
            )
            outcome.error = str(e)
            outcome.error_type = type(e).__name__
            return outcome
        except Exception as e:
            logger.exception(f"Unexpected error during detection for user {user_id}: {e}")
            outcome.error = str(e)
            outcome.error_type = type(e).__name__
            return outcome

        if self.event_service is not None and outcome.result.events:
            outcome.events_published = self.event_service.publish_subscription_changes(
                user_id, outcome.result.events
            )
        return outcome
