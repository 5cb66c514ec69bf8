"""
Unit tests for the Subscription, MerchantAlias and Transaction models.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from models.merchant_alias import MerchantAlias, AliasSource
from models.subscription import (
    Subscription,
    SubscriptionFrequency,
    SubscriptionStatus,
    subscription_id_for,
)
from models.transaction import Transaction
from tests.fixtures.subscription_fixtures import create_subscription, create_transaction


class TestSubscription:

    def test_dynamodb_item_format(self):
        subscription = create_subscription(
            status=SubscriptionStatus.CANCELLED, cancelledByUser=True, cancelledAt=1704067200000
        )

        item = subscription.to_dynamodb_item()

        assert item['subscriptionId'] == str(subscription.subscription_id)
        assert item['status'] == "cancelled"
        assert item['frequency'] == "monthly"
        assert item['cancelledByUser'] == 'true'
        assert item['upsertKey'] == "NETFLIX#15.99"
        assert item['amount'] == Decimal("15.99")

    def test_from_dynamodb_item_converts_types(self):
        subscription = create_subscription(transaction_ids=["t1", "t2"])
        item = subscription.to_dynamodb_item()
        item['lastBilling'] = Decimal(item['lastBilling'])
        item['occurrenceCount'] = Decimal(4)

        restored = Subscription.from_dynamodb_item(item)

        assert restored.subscription_id == subscription.subscription_id
        assert restored.last_billing == subscription.last_billing
        assert restored.occurrence_count == 4
        assert restored.status == SubscriptionStatus.ACTIVE
        assert restored.cancelled_by_user is False
        assert restored.transaction_ids == ["t1", "t2"]

    def test_unknown_enum_values_fall_back(self):
        item = create_subscription().to_dynamodb_item()
        item['frequency'] = "fortnightly-ish"
        item['status'] = "paused"

        restored = Subscription.from_dynamodb_item(item)

        assert restored.frequency == SubscriptionFrequency.IRREGULAR
        assert restored.status == SubscriptionStatus.PENDING_DETECTION

    def test_apply_changes_touches_updated_at_only_on_change(self):
        subscription = create_subscription()
        subscription.updated_at = 1

        assert subscription.apply_changes(amount=Decimal("15.99")) is False
        assert subscription.updated_at == 1

        assert subscription.apply_changes(amount=Decimal("16.99"), user_id="someone-else") is True
        assert subscription.amount == Decimal("16.99")
        assert subscription.user_id == "test-user"
        assert subscription.updated_at > 1

    def test_deterministic_id(self):
        first = subscription_id_for("u1", "NETFLIX", "15.99")

        assert first == subscription_id_for("u1", "NETFLIX", "15.99")
        assert first != subscription_id_for("u2", "NETFLIX", "15.99")
        assert first != subscription_id_for("u1", "NETFLIX", "22.99")
        assert isinstance(first, uuid.UUID)

    def test_live_statuses(self):
        assert SubscriptionStatus.ACTIVE.is_live
        assert SubscriptionStatus.REACTIVATED.is_live
        assert not SubscriptionStatus.AT_RISK.is_live
        assert not SubscriptionStatus.CANCELLED.is_live

    def test_confidence_range(self):
        with pytest.raises(ValidationError):
            create_subscription(confidence="1.5")

    def test_negative_timestamp_rejected(self):
        with pytest.raises(ValidationError):
            Subscription(
                userId="u1", name="X", normalizedMerchantKey="X", amountBucket="1.00",
                amount="1.00", lastBilling=-1
            )


class TestMerchantAlias:

    def test_dynamodb_round_trip_of_string_fields(self):
        alias = MerchantAlias(
            namespace="u1", originalName="NFLX", normalizedName="NETFLIX",
            verified=True, source=AliasSource.ENRICHER, confidence=0.9
        )

        item = alias.to_dynamodb_item()
        item['usageCount'] = Decimal(3)
        restored = MerchantAlias.from_dynamodb_item(item)

        assert item['verified'] == 'true'
        assert item['source'] == "enricher"
        assert restored.verified is True
        assert restored.source == AliasSource.ENRICHER
        assert restored.usage_count == 3
        assert restored.confidence == Decimal("0.9")

    def test_unknown_source_falls_back(self):
        restored = MerchantAlias.from_dynamodb_item({
            'namespace': "u1", 'originalName': "A", 'normalizedName': "A", 'source': "magic"
        })

        assert restored.source == AliasSource.HEURISTIC

    def test_blank_names_rejected(self):
        with pytest.raises(ValidationError):
            MerchantAlias(namespace="u1", originalName=" ", normalizedName="A")


class TestTransaction:

    def test_amount_and_currency_normalization(self):
        txn = Transaction(transactionId="t1", userId="u1", date=0, amount="-15.99", currency=" usd ")

        assert txn.amount == Decimal("-15.99")
        assert txn.currency == "USD"
        assert txn.is_debit
        assert txn.charge_amount == Decimal("15.99")

    def test_merchant_text_prefers_merchant_name(self):
        assert create_transaction(0, "1", "CARD 1234", merchant_name_raw="Spotify").merchant_text == "Spotify"
        assert create_transaction(0, "1", " NETFLIX.COM ").merchant_text == "NETFLIX.COM"

    def test_day(self):
        assert create_transaction(31, "1").day == date(2024, 2, 1)

    def test_missing_fields(self):
        txn = create_transaction(None, None)

        assert not txn.is_debit
        with pytest.raises(ValueError):
            txn.charge_amount
        with pytest.raises(ValueError):
            txn.day

    def test_invalid_amount(self):
        with pytest.raises(ValidationError):
            Transaction(transactionId="t1", userId="u1", amount="abc")

    def test_from_dynamodb_item(self):
        txn = Transaction.from_dynamodb_item({
            'transactionId': "t1", 'userId': "u1", 'date': Decimal(1704067200000),
            'amount': Decimal("-9.99"), 'pending': "false"
        })

        assert txn.date == 1704067200000
        assert txn.pending is False
