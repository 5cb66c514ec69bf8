"""
Tests for BatchDetectionRunner: per-user isolation, dedupe, lifecycle refresh and publishing.
"""

from unittest.mock import MagicMock

import pytest

from models.subscription import ChangeType, SubscriptionStatus
from models.transaction import MS_PER_DAY
from services.subscription_detection.batch_runner import BatchDetectionRunner
from services.subscription_detection.config import DetectionConfig
from services.subscription_detection.exceptions import StorageError
from services.subscription_detection.synthesizer import SubscriptionSynthesizer
from tests.fixtures.subscription_fixtures import (
    InMemoryMerchantAliasRepository,
    InMemorySubscriptionRepository,
    InMemoryTransactionSource,
    create_series,
    create_subscription,
    day_ts,
    monthly_days,
)

AS_OF = day_ts(100)


class FailingSubscriptionRepository(InMemorySubscriptionRepository):
    """Raises a storage failure for one user."""

    def __init__(self, failing_user: str):
        super().__init__()
        self.failing_user = failing_user

    def list_for_user(self, user_id):
        if user_id == self.failing_user:
            raise StorageError("DynamoDB error in list_subscriptions: InternalServerError",
                               operation="list_subscriptions", error_code="InternalServerError")
        return super().list_for_user(user_id)


def series_for(user_id):
    return create_series(monthly_days(4), "15.99", prefix=user_id, user_id=user_id)


@pytest.fixture
def source():
    return InMemoryTransactionSource({
        "alice": series_for("alice"),
        "bob": series_for("bob"),
        "carol": series_for("carol"),
    })


def make_runner(source, subscription_repository=None, event_service=None, config=None):
    config = config or DetectionConfig(max_workers=2)
    synthesizer = SubscriptionSynthesizer(
        subscription_repository or InMemorySubscriptionRepository(),
        InMemoryMerchantAliasRepository(),
        config
    )
    return BatchDetectionRunner(source, synthesizer, config, event_service=event_service)


class TestBatchDetectionRunner:

    def test_every_user_is_processed_in_input_order(self, source):
        repository = InMemorySubscriptionRepository()
        runner = make_runner(source, repository)

        outcomes = runner.run(["carol", "alice", "bob"], as_of=AS_OF)

        assert [o.user_id for o in outcomes] == ["carol", "alice", "bob"]
        assert all(o.succeeded for o in outcomes)
        for user_id in ("alice", "bob", "carol"):
            assert len(repository.for_user(user_id)) == 1

    def test_duplicate_users_run_once(self, source):
        runner = make_runner(source)

        outcomes = runner.run(["alice", "alice", "bob"], as_of=AS_OF)

        assert [o.user_id for o in outcomes] == ["alice", "bob"]
        assert [call[0] for call in source.calls].count("alice") == 1

    def test_lookback_window_is_requested(self, source):
        runner = make_runner(source)

        runner.run(["alice"], as_of=AS_OF)

        assert source.calls == [("alice", AS_OF - 180 * MS_PER_DAY, AS_OF)]

    def test_storage_failure_is_isolated(self, source):
        repository = FailingSubscriptionRepository("bob")
        runner = make_runner(source, repository)

        outcomes = {o.user_id: o for o in runner.run(["alice", "bob", "carol"], as_of=AS_OF)}

        assert outcomes["bob"].error_type == "StorageError"
        assert not outcomes["bob"].succeeded
        assert outcomes["alice"].succeeded
        assert outcomes["carol"].succeeded
        assert len(repository.for_user("carol")) == 1

    def test_unexpected_failure_is_isolated(self, source):
        synthesizer = MagicMock()
        synthesizer.detect_user_subscriptions.side_effect = RuntimeError("boom")
        runner = BatchDetectionRunner(source, synthesizer, DetectionConfig(max_workers=1))

        outcome = runner.run(["alice"], as_of=AS_OF)[0]

        assert outcome.error == "boom"
        assert outcome.error_type == "RuntimeError"

    def test_user_without_transactions_has_nothing_to_change(self, source):
        runner = make_runner(source)

        outcome = runner.run(["nobody"], as_of=AS_OF)[0]

        assert outcome.succeeded
        assert outcome.error is None
        assert outcome.result.events == []

    def test_silent_subscription_is_cancelled_without_transactions_in_window(self, source):
        repository = InMemorySubscriptionRepository([create_subscription(user_id="alice", last_billing_day=90)])
        event_service = MagicMock()
        event_service.publish_subscription_changes.return_value = 1
        runner = make_runner(source, repository, event_service=event_service)

        outcome = runner.run(["alice"], as_of=day_ts(400))[0]

        assert outcome.succeeded
        assert [s.status for s in repository.for_user("alice")] == [SubscriptionStatus.CANCELLED]
        user_id, events = event_service.publish_subscription_changes.call_args[0]
        assert user_id == "alice"
        assert [e.change_type for e in events] == [ChangeType.CANCELLED]
        assert outcome.events_published == 1

    def test_cancelled_batch(self, source):
        runner = make_runner(source)

        outcomes = runner.run(["alice", "bob"], as_of=AS_OF, cancel_check=lambda: True)

        assert all(o.cancelled for o in outcomes)
        assert all(o.error_type == "DetectionCancelled" for o in outcomes)

    def test_expired_deadline_cancels(self, source):
        runner = make_runner(source)

        outcome = runner.run(["alice"], as_of=AS_OF, deadline=0)[0]

        assert outcome.cancelled

    def test_change_events_are_published(self, source):
        event_service = MagicMock()
        event_service.publish_subscription_changes.return_value = 1
        runner = make_runner(source, event_service=event_service)

        outcome = runner.run(["alice"], as_of=AS_OF)[0]

        assert outcome.events_published == 1
        user_id, events = event_service.publish_subscription_changes.call_args[0]
        assert user_id == "alice"
        assert [e.change_type for e in events] == [ChangeType.CREATED]

    def test_no_publish_when_nothing_changed(self, source):
        event_service = MagicMock()
        event_service.publish_subscription_changes.return_value = 1
        runner = make_runner(source, event_service=event_service)
        runner.run(["alice"], as_of=AS_OF)
        event_service.reset_mock()

        outcome = runner.run(["alice"], as_of=AS_OF)[0]

        assert outcome.succeeded
        assert outcome.events_published == 0
        event_service.publish_subscription_changes.assert_not_called()

    def test_empty_user_list(self, source):
        assert make_runner(source).run([]) == []
