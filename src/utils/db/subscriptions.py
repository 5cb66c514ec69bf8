"""
Subscription database operations.

Subscriptions are stored with ``userId`` as partition key and ``subscriptionId``
as sort key. Subscription ids are derived deterministically from the series key,
so writes are plain full-item puts: overlapping detection runs converge on the
same item and the last writer wins.
"""

import logging
import uuid
from typing import List, Optional, Iterable
from boto3.dynamodb.conditions import Key

from models.subscription import Subscription, SubscriptionStatus
from .base import (
    tables,
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
    StorageError,
)

logger = logging.getLogger(__name__)

DB_TABLE_NOT_INITIALIZED_ERROR = "Database table not initialized"


def _subscriptions_table():
    table = tables.subscriptions
    if not table:
        logger.error("DB: Subscriptions table not initialized")
        raise StorageError(DB_TABLE_NOT_INITIALIZED_ERROR, error_code="TableNotInitialized")
    return table


@monitor_performance(warn_threshold_ms=200)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("get_subscription_from_db")
def get_subscription_from_db(user_id: str, subscription_id: uuid.UUID) -> Optional[Subscription]:
    """
    Retrieve a subscription by user ID and subscription ID.

    Returns:
        Subscription if found, None otherwise
    """
    table = _subscriptions_table()
    logger.debug(f"DB: Getting subscription {str(subscription_id)} for user {user_id}")
    response = table.get_item(Key={'userId': user_id, 'subscriptionId': str(subscription_id)})
    item = response.get('Item')
    if item:
        return Subscription.from_dynamodb_item(item)
    return None


@monitor_performance(operation_type="query", warn_threshold_ms=500)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("list_user_subscriptions_from_db")
def list_user_subscriptions_from_db(
    user_id: str,
    statuses: Optional[Iterable[SubscriptionStatus]] = None
) -> List[Subscription]:
    """
    List all subscriptions of a user, optionally filtered by status.

    Follows ``LastEvaluatedKey`` until the partition is exhausted.
    """
    table = _subscriptions_table()

    logger.debug(f"DB: Listing subscriptions for user {user_id}, statuses: {statuses}")

    query_kwargs = {'KeyConditionExpression': Key('userId').eq(user_id)}
    items = []
    while True:
        response = table.query(**query_kwargs)
        items.extend(response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            break
        query_kwargs['ExclusiveStartKey'] = last_key

    subscriptions = [Subscription.from_dynamodb_item(item) for item in items]

    if statuses is not None:
        wanted = set(statuses)
        subscriptions = [s for s in subscriptions if s.status in wanted]

    logger.info(f"DB: Found {len(subscriptions)} subscriptions for user {user_id}")
    return subscriptions


@monitor_performance(warn_threshold_ms=300)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("upsert_subscription_in_db")
def upsert_subscription_in_db(subscription: Subscription) -> Subscription:
    """
    Create or replace a subscription.

    Full-item puts are idempotent, which makes this safe to retry.
    """
    table = _subscriptions_table()
    table.put_item(Item=subscription.to_dynamodb_item())
    logger.info(
        f"DB: Subscription {str(subscription.subscription_id)} upserted for user "
        f"{subscription.user_id} (status={subscription.status.value})"
    )
    return subscription
