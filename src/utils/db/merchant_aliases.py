"""
Merchant alias database operations.

The alias table is keyed by ``namespace`` (partition) and ``originalName``
(sort). It is written by both subscription detection and the merchant category
enricher, so writes are optimistic: creation is conditional on the key being
absent and a lost race turns into a usage increment.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from boto3.dynamodb.conditions import Key

from models.merchant_alias import MerchantAlias
from .base import (
    tables,
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
    ConflictError,
    StorageError,
)

logger = logging.getLogger(__name__)

DB_TABLE_NOT_INITIALIZED_ERROR = "Database table not initialized"


def _aliases_table():
    table = tables.merchant_aliases
    if not table:
        logger.error("DB: MerchantAliases table not initialized")
        raise StorageError(DB_TABLE_NOT_INITIALIZED_ERROR, error_code="TableNotInitialized")
    return table


@monitor_performance(warn_threshold_ms=200)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("get_alias_from_db")
def get_alias_from_db(namespace: str, original_name: str) -> Optional[MerchantAlias]:
    """Retrieve an alias by its unique (namespace, originalName) key."""
    table = _aliases_table()
    response = table.get_item(Key={'namespace': namespace, 'originalName': original_name})
    item = response.get('Item')
    if item:
        return MerchantAlias.from_dynamodb_item(item)
    return None


@monitor_performance(operation_type="query", warn_threshold_ms=500)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("list_aliases_from_db")
def list_aliases_from_db(namespace: str) -> List[MerchantAlias]:
    """List every alias in a namespace."""
    table = _aliases_table()

    query_kwargs = {'KeyConditionExpression': Key('namespace').eq(namespace)}
    items = []
    while True:
        response = table.query(**query_kwargs)
        items.extend(response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            break
        query_kwargs['ExclusiveStartKey'] = last_key

    logger.debug(f"DB: Found {len(items)} aliases in namespace {namespace}")
    return [MerchantAlias.from_dynamodb_item(item) for item in items]


@retry_on_throttle(max_attempts=3)
@dynamodb_operation("create_alias_in_db")
def create_alias_in_db(alias: MerchantAlias) -> MerchantAlias:
    """
    Create an alias if its key is not taken yet.

    Raises:
        ConflictError: If another writer created the alias first
    """
    table = _aliases_table()
    table.put_item(
        Item=alias.to_dynamodb_item(),
        ConditionExpression='attribute_not_exists(originalName)'
    )
    logger.info(f"DB: Alias '{alias.original_name}' -> '{alias.normalized_name}' created in {alias.namespace}")
    return alias


@dynamodb_operation("increment_alias_usage_in_db")
def increment_alias_usage_in_db(
    namespace: str,
    original_name: str,
    increment: int = 1,
    used_at: Optional[int] = None
) -> MerchantAlias:
    """
    Atomically bump ``usageCount`` and advance ``lastUsedAt`` of an existing alias.

    ``used_at`` is the date of the newest transaction being counted (defaults to
    now). The update only applies when it moves ``lastUsedAt`` forward, so the
    same transactions are never counted twice. Not retried.

    Raises:
        ConflictError: If the alias is missing or already counted up to ``used_at``
    """
    table = _aliases_table()
    if used_at is None:
        used_at = int(datetime.now(timezone.utc).timestamp() * 1000)
    response = table.update_item(
        Key={'namespace': namespace, 'originalName': original_name},
        UpdateExpression='ADD usageCount :inc SET lastUsedAt = :used',
        ConditionExpression='attribute_exists(originalName) AND '
                            '(attribute_not_exists(lastUsedAt) OR lastUsedAt < :used)',
        ExpressionAttributeValues={':inc': increment, ':used': used_at},
        ReturnValues='ALL_NEW'
    )
    return MerchantAlias.from_dynamodb_item(response['Attributes'])


def record_alias_usage(alias: MerchantAlias, increment: int = 1) -> MerchantAlias:
    """
    Create-or-increment an alias.

    First sight of a key creates the alias with ``usageCount`` set to
    ``increment``; any later sighting (including losing a creation race)
    increments the stored counter up to ``alias.last_used_at``. When another
    writer already counted that far, the stored alias is returned unchanged.
    """
    try:
        return create_alias_in_db(alias.model_copy(update={'usage_count': increment}))
    except ConflictError:
        logger.debug(f"DB: Alias '{alias.original_name}' already exists in {alias.namespace}, incrementing")

    try:
        return increment_alias_usage_in_db(alias.namespace, alias.original_name, increment, alias.last_used_at)
    except ConflictError:
        logger.debug(
            f"DB: Alias '{alias.original_name}' in {alias.namespace} already counted up to {alias.last_used_at}"
        )
        return get_alias_from_db(alias.namespace, alias.original_name) or alias


@monitor_performance(warn_threshold_ms=300)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("save_alias_in_db")
def save_alias_in_db(alias: MerchantAlias) -> MerchantAlias:
    """Replace an alias, used for verification and category updates by the enricher."""
    table = _aliases_table()
    table.put_item(Item=alias.to_dynamodb_item())
    logger.info(f"DB: Alias '{alias.original_name}' saved in {alias.namespace} (verified={alias.verified})")
    return alias
