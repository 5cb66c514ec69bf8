"""
Unit tests for SubscriptionSynthesizer.

Covers end-to-end detection over in-memory repositories: creation, idempotent
re-runs, silence-driven transitions, price changes, amount splits,
reactivation, user cancellation, cancellation of runs, single-transaction
analysis and the upcoming-charge preview.
"""

import random
import uuid
from datetime import date
from decimal import Decimal

import pytest

from models.subscription import (
    ChangeType,
    SubscriptionFrequency,
    SubscriptionStatus,
    subscription_id_for,
)
from models.transaction import timestamp_from_date
from services.subscription_detection import (
    DataError,
    DetectionCancelled,
    InvalidInputError,
    SubscriptionSynthesizer,
)
from utils.db.base import NotFound
from tests.fixtures.subscription_fixtures import (
    TEST_USER,
    InMemoryMerchantAliasRepository,
    InMemorySubscriptionRepository,
    create_series,
    create_subscription,
    create_transaction,
    day_ts,
    monthly_days,
)


@pytest.fixture
def subscription_repo():
    return InMemorySubscriptionRepository()


@pytest.fixture
def alias_repo():
    return InMemoryMerchantAliasRepository()


@pytest.fixture
def synthesizer(subscription_repo, alias_repo):
    return SubscriptionSynthesizer(subscription_repo, alias_repo)


def _grocery(day=150):
    """An unrelated one-off purchase so a run has input."""
    return create_transaction(day, "42.17", "WHOLE FOODS MARKET", transaction_id=f"grocery-{day}")


class TestDetection:
    """New subscriptions from raw transactions."""

    def test_monthly_series_creates_active_subscription(self, synthesizer, subscription_repo):
        transactions = create_series(monthly_days(4), "15.99")

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95))

        assert len(result.created) == 1
        subscription = result.created[0]
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.frequency == SubscriptionFrequency.MONTHLY
        assert subscription.amount == Decimal("15.99")
        assert subscription.normalized_merchant_key == "NETFLIX"
        assert subscription.name == "Netflix.Com"
        assert subscription.occurrence_count == 4
        assert subscription.transaction_ids == sorted(t.transaction_id for t in transactions)
        assert subscription.subscription_id == subscription_id_for(TEST_USER, "NETFLIX", "15.99")
        assert subscription.next_billing == timestamp_from_date(date(2024, 4, 1))

        assert [e.change_type for e in result.events] == [ChangeType.CREATED]
        assert result.events[0].subscription_id == subscription.subscription_id
        assert len(subscription_repo.for_user()) == 1

    def test_rerun_over_same_transactions_changes_nothing(self, synthesizer, subscription_repo):
        transactions = create_series(monthly_days(4), "15.99") + create_series(monthly_days(4, start=3), "9.99", "SPOTIFY USA")
        synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95))
        upserts_after_first_run = len(subscription_repo.upserts)
        stored = subscription_repo.for_user()

        shuffled = list(transactions)
        random.Random(7).shuffle(shuffled)
        result = synthesizer.detect_user_subscriptions(TEST_USER, shuffled, as_of=day_ts(95))

        assert not result.has_changes
        assert result.events == []
        assert len(subscription_repo.upserts) == upserts_after_first_run
        assert subscription_repo.for_user() == stored

    def test_rerun_does_not_inflate_alias_usage(self, synthesizer, alias_repo):
        transactions = create_series(monthly_days(4), "15.99")

        synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95))
        synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95))

        assert alias_repo.get(TEST_USER, "NETFLIX").usage_count == 4

        renewal = create_transaction(120, "15.99", "NETFLIX.COM", transaction_id="netflix-renewal")
        synthesizer.detect_user_subscriptions(TEST_USER, transactions + [renewal], as_of=day_ts(121))

        assert alias_repo.get(TEST_USER, "NETFLIX").usage_count == 5

    def test_frequency_boundary_deltas_are_monthly(self, synthesizer):
        transactions = create_series([0, 29, 60, 90], "15.99")

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(92))

        assert len(result.created) == 1
        assert result.created[0].frequency == SubscriptionFrequency.MONTHLY

    def test_mixed_deltas_are_irregular_and_not_promoted(self, synthesizer, subscription_repo):
        transactions = create_series([0, 29, 89, 120], "15.99")

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(121))

        assert result.created == []
        assert result.irregular_clusters == 1
        assert result.clusters_evaluated == 1
        assert subscription_repo.for_user() == []

    def test_two_occurrences_are_promoted_provisionally(self, synthesizer):
        transactions = create_series([0, 30], "15.99")

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(31))

        assert len(result.created) == 1
        # (0.15 + 0.3 + 0.2 + 0.14) * 0.8
        assert result.created[0].detection_confidence == Decimal("0.632")

    def test_confidence_does_not_drop_as_regular_occurrences_are_added(self, alias_repo):
        confidences = []
        for count in (2, 3, 4, 5):
            synthesizer = SubscriptionSynthesizer(InMemorySubscriptionRepository(), InMemoryMerchantAliasRepository())
            days = monthly_days(count)
            result = synthesizer.detect_user_subscriptions(
                TEST_USER, create_series(days, "15.99"), as_of=day_ts(days[-1] + 1)
            )
            confidences.append(result.created[0].detection_confidence)

        assert confidences == sorted(confidences)
        assert confidences[0] < confidences[-1]

    def test_singletons_are_counted_but_not_promoted(self, synthesizer):
        transactions = create_series(monthly_days(3), "15.99") + [_grocery(40)]

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(61))

        assert len(result.created) == 1
        assert result.unconfirmed_clusters == 1

    def test_stale_series_is_not_created(self, synthesizer, subscription_repo):
        transactions = create_series(monthly_days(3), "15.99")

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(160))

        assert result.created == []
        assert subscription_repo.for_user() == []

    def test_credits_and_pending_transactions_are_ignored(self, synthesizer):
        refunds = [
            create_transaction(day, "15.99", "NETFLIX.COM", transaction_id=f"refund-{day}").model_copy(
                update={'amount': Decimal("15.99")}
            )
            for day in monthly_days(4)
        ]
        pending = [
            create_transaction(day, "9.99", "SPOTIFY", pending=True, transaction_id=f"pending-{day}")
            for day in monthly_days(4)
        ]

        result = synthesizer.detect_user_subscriptions(TEST_USER, refunds + pending, as_of=day_ts(95))

        assert result.created == []
        assert result.clusters_evaluated == 0

    def test_transactions_outside_lookback_are_ignored(self, synthesizer):
        transactions = create_series(monthly_days(4), "15.99")

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(400))

        assert result.clusters_evaluated == 0
        assert result.created == []


class TestInputValidation:

    @pytest.mark.parametrize("transactions", [None, []])
    def test_missing_or_empty_input_is_rejected(self, synthesizer, transactions):
        with pytest.raises(InvalidInputError):
            synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95))

    def test_malformed_transactions_are_skipped(self, synthesizer):
        transactions = create_series(monthly_days(4), "15.99") + [
            create_transaction(None, "15.99", transaction_id="no-date"),
            create_transaction(45, None, transaction_id="no-amount"),
        ]

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95))

        assert sorted(result.skipped_transactions) == ["no-amount", "no-date"]
        assert len(result.created) == 1
        assert result.created[0].occurrence_count == 4

    def test_duplicate_transaction_ids_count_once(self, synthesizer):
        transactions = create_series(monthly_days(4), "15.99")

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions + transactions[:2], as_of=day_ts(95))

        assert result.created[0].occurrence_count == 4


class TestLifecycle:
    """Transitions of stored subscriptions."""

    def test_silence_moves_active_to_at_risk_then_cancelled(self, alias_repo):
        subscription = create_subscription(last_billing_day=90)
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)

        at_risk = synthesizer.detect_user_subscriptions(TEST_USER, [_grocery()], as_of=day_ts(160))
        assert [e.change_type for e in at_risk.events] == [ChangeType.AT_RISK]
        assert at_risk.state_changed[0].status == SubscriptionStatus.AT_RISK
        assert at_risk.state_changed[0].status_changed_at == day_ts(160)

        cancelled = synthesizer.detect_user_subscriptions(TEST_USER, [_grocery()], as_of=day_ts(170))
        assert [e.change_type for e in cancelled.events] == [ChangeType.CANCELLED]
        assert repo.get(TEST_USER, subscription.subscription_id).status == SubscriptionStatus.CANCELLED

    def test_silence_within_grace_keeps_subscription_active(self, alias_repo):
        subscription = create_subscription(last_billing_day=90)
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)

        result = synthesizer.detect_user_subscriptions(TEST_USER, [_grocery()], as_of=day_ts(130))

        assert result.events == []
        assert repo.get(TEST_USER, subscription.subscription_id).status == SubscriptionStatus.ACTIVE

    def test_long_silence_cancels_directly(self, alias_repo):
        subscription = create_subscription(last_billing_day=90)
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)

        result = synthesizer.detect_user_subscriptions(TEST_USER, [_grocery()], as_of=day_ts(175))

        assert [e.change_type for e in result.events] == [ChangeType.CANCELLED]

    def test_price_change_across_runs_updates_one_subscription(self, synthesizer, subscription_repo):
        old_price = create_series(monthly_days(4), "9.99", prefix="old")
        synthesizer.detect_user_subscriptions(TEST_USER, old_price, as_of=day_ts(95))

        new_price = create_series([120, 150], "12.99", prefix="new")
        result = synthesizer.detect_user_subscriptions(TEST_USER, old_price + new_price, as_of=day_ts(155))

        subscriptions = subscription_repo.for_user()
        assert len(subscriptions) == 1
        assert subscriptions[0].amount == Decimal("12.99")
        assert subscriptions[0].amount_bucket == "12.99"
        assert subscriptions[0].occurrence_count == 6
        assert [e.change_type for e in result.events] == [ChangeType.AMOUNT_CHANGED]
        assert result.events[0].previous_amount == Decimal("9.99")
        assert result.updated[0].subscription_id == subscriptions[0].subscription_id

        again = synthesizer.detect_user_subscriptions(TEST_USER, old_price + new_price, as_of=day_ts(155))
        assert not again.has_changes

    def test_price_change_within_one_run_creates_subscription_at_new_price(self, synthesizer, subscription_repo):
        transactions = (
            create_series(monthly_days(4), "9.99", prefix="old")
            + create_series([120, 150], "12.99", prefix="new")
        )

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(155))

        assert len(result.created) == 1
        assert result.created[0].amount == Decimal("12.99")
        assert result.created[0].occurrence_count == 6
        assert [e.change_type for e in result.events] == [ChangeType.CREATED]

    def test_concurrent_prices_are_separate_subscriptions(self, synthesizer, subscription_repo):
        transactions = (
            create_series(monthly_days(6), "9.99", prefix="basic")
            + create_series(monthly_days(6, start=5), "49.99", prefix="premium")
        )

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(160))

        assert len(result.created) == 2
        assert sorted(s.amount for s in subscription_repo.for_user()) == [Decimal("9.99"), Decimal("49.99")]
        assert len({s.subscription_id for s in result.created}) == 2

    def test_small_drift_stays_in_the_same_series(self, synthesizer, subscription_repo):
        synthesizer.detect_user_subscriptions(TEST_USER, create_series(monthly_days(4), "15.99"), as_of=day_ts(95))

        transactions = create_series(monthly_days(4), "15.99") + create_series([120, 150], "16.19", prefix="drift")
        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(155))

        subscriptions = subscription_repo.for_user()
        assert len(subscriptions) == 1
        assert ChangeType.AMOUNT_CHANGED not in [e.change_type for e in result.events]

    def test_reactivation_after_gap(self, alias_repo):
        subscription = create_subscription(
            last_billing_day=90,
            first_billing_day=0,
            status=SubscriptionStatus.CANCELLED
        )
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)
        transactions = create_series([30, 60, 90, 210], "15.99")

        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(210))

        assert [e.change_type for e in result.events] == [ChangeType.REACTIVATED]
        stored = repo.get(TEST_USER, subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.last_billing == day_ts(210)
        assert stored.frequency == SubscriptionFrequency.MONTHLY

    @pytest.mark.parametrize("gap", [120, 140, 170, 200])
    def test_new_charge_after_cancellation_reactivates_whatever_the_gap(self, synthesizer, subscription_repo, gap):
        transactions = create_series(monthly_days(4), "15.99")
        synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95))
        silent = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(170))
        assert [e.change_type for e in silent.events] == [ChangeType.CANCELLED]

        resumed_day = 90 + gap
        transactions = transactions + [
            create_transaction(resumed_day, "15.99", "NETFLIX.COM", transaction_id="netflix-resumed")
        ]
        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(resumed_day))

        assert [e.change_type for e in result.events] == [ChangeType.REACTIVATED]
        stored = subscription_repo.for_user()
        assert len(stored) == 1
        assert stored[0].status == SubscriptionStatus.ACTIVE
        assert stored[0].last_billing == day_ts(resumed_day)
        assert stored[0].frequency == SubscriptionFrequency.MONTHLY

        again = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(resumed_day))
        assert not again.has_changes

    def test_reactivation_recomputes_confidence_without_the_pause(self, synthesizer, subscription_repo):
        transactions = create_series(monthly_days(4), "15.99")
        synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95))
        synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(170))
        assert subscription_repo.for_user()[0].detection_confidence == Decimal("0.94")

        resumed = transactions + [create_transaction(230, "15.99", "NETFLIX.COM", transaction_id="netflix-resumed")]
        result = synthesizer.detect_user_subscriptions(TEST_USER, resumed, as_of=day_ts(230))

        # Days 60, 90 and 230 are in the window: one 30-day interval, the 140-day pause ignored
        # (0.3 * 0.75 + 0.3 * 1 + 0.2 * 1 + 0.2 * 0.7) * 0.8
        assert result.irregular_clusters == 0
        assert subscription_repo.for_user()[0].detection_confidence == Decimal("0.692")

    def test_single_renewal_keeps_yearly_subscription_alive(self, alias_repo):
        subscription = create_subscription(
            merchant_key="ADOBE",
            amount="239.88",
            last_billing_day=0,
            first_billing_day=0,
            frequency=SubscriptionFrequency.YEARLY
        )
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)
        renewal = create_transaction(366, "239.88", "ADOBE", transaction_id="adobe-renewal")

        result = synthesizer.detect_user_subscriptions(TEST_USER, [renewal], as_of=day_ts(367))

        assert result.events == []
        stored = repo.get(TEST_USER, subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.last_billing == day_ts(366)
        assert "adobe-renewal" in stored.transaction_ids


class TestUserCancellation:

    def test_mark_cancelled_is_authoritative(self, alias_repo):
        subscription = create_subscription(last_billing_day=90)
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)

        event = synthesizer.mark_cancelled(TEST_USER, subscription.subscription_id, cancelled_at=day_ts(95))

        assert event.change_type == ChangeType.CANCELLED
        stored = repo.get(TEST_USER, subscription.subscription_id)
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.cancelled_by_user is True
        assert stored.cancelled_at == day_ts(95)

        # Charges up to the cancellation do not bring it back
        result = synthesizer.detect_user_subscriptions(
            TEST_USER, create_series(monthly_days(4), "15.99"), as_of=day_ts(100)
        )
        assert result.events == []
        assert repo.get(TEST_USER, subscription.subscription_id).status == SubscriptionStatus.CANCELLED

    def test_charge_after_user_cancellation_reactivates(self, alias_repo):
        subscription = create_subscription(last_billing_day=90)
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)
        synthesizer.mark_cancelled(TEST_USER, subscription.subscription_id, cancelled_at=day_ts(95))

        transactions = create_series(monthly_days(5), "15.99")
        result = synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(121))

        assert [e.change_type for e in result.events] == [ChangeType.REACTIVATED]
        stored = repo.get(TEST_USER, subscription.subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.cancelled_by_user is False
        assert stored.cancelled_at is None

    def test_mark_cancelled_twice_emits_once(self, alias_repo):
        subscription = create_subscription()
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)

        first = synthesizer.mark_cancelled(TEST_USER, subscription.subscription_id, cancelled_at=day_ts(95))
        second = synthesizer.mark_cancelled(TEST_USER, subscription.subscription_id, cancelled_at=day_ts(95))

        assert first is not None
        assert second is None
        assert len(repo.upserts) == 1

    def test_mark_cancelled_unknown_subscription(self, synthesizer):
        with pytest.raises(NotFound):
            synthesizer.mark_cancelled(TEST_USER, uuid.uuid4())


class TestRefreshLifecycle:
    """Silence-only evaluation when a user has no transactions in the window."""

    def test_silence_cancels_without_any_transactions(self, alias_repo):
        subscription = create_subscription(last_billing_day=90)
        repo = InMemorySubscriptionRepository([subscription])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)

        result = synthesizer.refresh_lifecycle(TEST_USER, as_of=day_ts(400))

        assert [e.change_type for e in result.events] == [ChangeType.CANCELLED]
        stored = repo.get(TEST_USER, subscription.subscription_id)
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.last_billing == day_ts(90)

    def test_refresh_is_a_fixpoint(self, alias_repo):
        repo = InMemorySubscriptionRepository([create_subscription(last_billing_day=90)])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)
        synthesizer.refresh_lifecycle(TEST_USER, as_of=day_ts(140))

        result = synthesizer.refresh_lifecycle(TEST_USER, as_of=day_ts(140))

        assert result.events == []
        assert len(repo.upserts) == 1

    def test_user_without_subscriptions(self, synthesizer, subscription_repo):
        result = synthesizer.refresh_lifecycle(TEST_USER, as_of=day_ts(400))

        assert result.events == []
        assert subscription_repo.upserts == []

    def test_cancelled_refresh_commits_nothing(self, alias_repo):
        repo = InMemorySubscriptionRepository([create_subscription(last_billing_day=90)])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)

        with pytest.raises(DetectionCancelled):
            synthesizer.refresh_lifecycle(TEST_USER, as_of=day_ts(400), cancel_check=lambda: True)

        assert repo.upserts == []


class TestRunCancellation:

    def test_cancel_before_anything_commits(self, synthesizer, subscription_repo):
        transactions = create_series(monthly_days(4), "15.99")

        with pytest.raises(DetectionCancelled) as exc_info:
            synthesizer.detect_user_subscriptions(
                TEST_USER, transactions, as_of=day_ts(95), cancel_check=lambda: True
            )

        assert exc_info.value.committed == 0
        assert subscription_repo.upserts == []

    def test_cancel_between_commits_keeps_committed_work(self, synthesizer, subscription_repo):
        transactions = (
            create_series(monthly_days(4), "15.99")
            + create_series(monthly_days(4, start=2), "9.99", "SPOTIFY USA")
        )
        calls = []

        def cancel_check():
            calls.append(1)
            # Two evaluation checks, then one check per commit
            return len(calls) >= 4

        with pytest.raises(DetectionCancelled) as exc_info:
            synthesizer.detect_user_subscriptions(TEST_USER, transactions, as_of=day_ts(95), cancel_check=cancel_check)

        assert exc_info.value.committed == 1
        assert len(subscription_repo.upserts) == 1

    def test_past_deadline_cancels(self, synthesizer, subscription_repo):
        with pytest.raises(DetectionCancelled):
            synthesizer.detect_user_subscriptions(
                TEST_USER, create_series(monthly_days(4), "15.99"), as_of=day_ts(95), deadline=0
            )
        assert subscription_repo.upserts == []


class TestAnalyzeTransaction:

    def test_transaction_in_monthly_series(self, synthesizer, alias_repo):
        history = create_series(monthly_days(4), "15.99") + [_grocery(50)]
        transaction = create_transaction(120, "15.99", "NETFLIX.COM", transaction_id="latest")

        analysis = synthesizer.analyze_transaction(TEST_USER, transaction, history)

        assert analysis.merchant_key == "NETFLIX"
        assert analysis.occurrence_count == 5
        assert analysis.classification.frequency == SubscriptionFrequency.MONTHLY
        assert analysis.is_subscription
        assert analysis.next_billing == timestamp_from_date(date(2024, 5, 1))
        assert alias_repo.items == {}

    def test_history_is_capped(self, synthesizer):
        history = create_series(monthly_days(20), "15.99")
        transaction = create_transaction(600, "15.99", "NETFLIX.COM", transaction_id="latest")

        analysis = synthesizer.analyze_transaction(TEST_USER, transaction, history)

        assert analysis.occurrence_count == 13

    def test_one_off_is_not_a_subscription(self, synthesizer):
        transaction = create_transaction(10, "42.17", "WHOLE FOODS MARKET")

        analysis = synthesizer.analyze_transaction(TEST_USER, transaction, [])

        assert analysis.occurrence_count == 1
        assert analysis.classification.is_irregular
        assert not analysis.is_subscription
        assert analysis.next_billing is None

    def test_credit_is_not_analyzed(self, synthesizer):
        credit = create_transaction(10, "15.99").model_copy(update={'amount': Decimal("15.99")})

        assert synthesizer.analyze_transaction(TEST_USER, credit, []) is None

    def test_malformed_transaction_raises(self, synthesizer):
        with pytest.raises(DataError):
            synthesizer.analyze_transaction(TEST_USER, create_transaction(None, "15.99"), [])


class TestUpcomingCharges:

    def test_pending_and_projected_charges(self, alias_repo):
        netflix = create_subscription(last_billing_day=90, first_billing_day=0)
        spotify = create_subscription(merchant_key="SPOTIFY", amount="9.99", last_billing_day=64, first_billing_day=3)
        cancelled = create_subscription(merchant_key="HULU", amount="7.99", status=SubscriptionStatus.CANCELLED)
        repo = InMemorySubscriptionRepository([netflix, spotify, cancelled])
        synthesizer = SubscriptionSynthesizer(repo, alias_repo)
        pending = create_transaction(94, "9.99", "SPOTIFY USA", pending=True, transaction_id="pending-spotify")

        charges = synthesizer.preview_upcoming_charges(TEST_USER, [pending], as_of=day_ts(95), horizon_days=30)

        assert [(c.subscription_id, c.pending) for c in charges] == [
            (spotify.subscription_id, True),
            (netflix.subscription_id, False),
            (spotify.subscription_id, False),
        ]
        assert charges[0].transaction_id == "pending-spotify"
        assert charges[1].expected_date == timestamp_from_date(date(2024, 5, 1))
        assert charges[2].expected_date == timestamp_from_date(date(2024, 5, 4))
        assert alias_repo.items == {}

    def test_no_live_subscriptions(self, synthesizer):
        assert synthesizer.preview_upcoming_charges(TEST_USER, [], as_of=day_ts(95)) == []
