"""
Repository interfaces used by subscription detection, and their DynamoDB
implementations.

The detection services only talk to these interfaces; storage failures surface
as ``StorageError`` from the implementations.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import List, Optional

from models.merchant_alias import MerchantAlias
from models.subscription import Subscription
from models.transaction import Transaction
from utils.db.subscriptions import (
    get_subscription_from_db,
    list_user_subscriptions_from_db,
    upsert_subscription_in_db,
)
from utils.db.merchant_aliases import (
    get_alias_from_db,
    list_aliases_from_db,
    record_alias_usage,
    save_alias_in_db,
)
from utils.db.transactions import list_user_transactions

logger = logging.getLogger(__name__)


class SubscriptionRepository(ABC):
    """Stores detected subscriptions, keyed by user and subscription id."""

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[Subscription]:
        raise NotImplementedError

    @abstractmethod
    def get(self, user_id: str, subscription_id: uuid.UUID) -> Optional[Subscription]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, subscription: Subscription) -> Subscription:
        """Create or fully replace a subscription. Must be idempotent."""
        raise NotImplementedError


class MerchantAliasRepository(ABC):
    """Append-friendly alias store shared with the merchant category enricher."""

    @abstractmethod
    def get(self, namespace: str, original_name: str) -> Optional[MerchantAlias]:
        raise NotImplementedError

    @abstractmethod
    def list(self, namespace: str) -> List[MerchantAlias]:
        raise NotImplementedError

    @abstractmethod
    def record_usage(self, alias: MerchantAlias, increment: int = 1) -> MerchantAlias:
        """
        Create the alias on first sight, otherwise increment its usage count.

        ``alias.last_used_at`` is the date of the newest transaction counted; a
        sighting not newer than the stored one leaves the alias unchanged.
        """
        raise NotImplementedError

    @abstractmethod
    def save(self, alias: MerchantAlias) -> MerchantAlias:
        """
        Replace an alias. Detection never calls this; the merchant category
        enricher uses it to verify aliases and attach categories.
        """
        raise NotImplementedError


class TransactionSource(ABC):
    """Supplies a user's raw transactions (owned by bank sync)."""

    @abstractmethod
    def list_transactions(
        self,
        user_id: str,
        start_date_ts: Optional[int] = None,
        end_date_ts: Optional[int] = None
    ) -> List[Transaction]:
        raise NotImplementedError


class DynamoDBSubscriptionRepository(SubscriptionRepository):

    def list_for_user(self, user_id: str) -> List[Subscription]:
        return list_user_subscriptions_from_db(user_id)

    def get(self, user_id: str, subscription_id: uuid.UUID) -> Optional[Subscription]:
        return get_subscription_from_db(user_id, subscription_id)

    def upsert(self, subscription: Subscription) -> Subscription:
        return upsert_subscription_in_db(subscription)


class DynamoDBMerchantAliasRepository(MerchantAliasRepository):

    def get(self, namespace: str, original_name: str) -> Optional[MerchantAlias]:
        return get_alias_from_db(namespace, original_name)

    def list(self, namespace: str) -> List[MerchantAlias]:
        return list_aliases_from_db(namespace)

    def record_usage(self, alias: MerchantAlias, increment: int = 1) -> MerchantAlias:
        return record_alias_usage(alias, increment)

    def save(self, alias: MerchantAlias) -> MerchantAlias:
        return save_alias_in_db(alias)


class DynamoDBTransactionSource(TransactionSource):

    def list_transactions(
        self,
        user_id: str,
        start_date_ts: Optional[int] = None,
        end_date_ts: Optional[int] = None
    ) -> List[Transaction]:
        return list_user_transactions(user_id, start_date_ts=start_date_ts, end_date_ts=end_date_ts)
