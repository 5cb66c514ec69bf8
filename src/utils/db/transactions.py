"""
Transaction database operations.

Transactions are owned by bank sync; subscription detection only reads them,
through the ``UserIdIndex`` GSI (partition key ``userId``, sort key ``date``).
"""

import logging
from typing import List, Dict, Any, Optional, Tuple
from boto3.dynamodb.conditions import Key
from pydantic import ValidationError

from models.transaction import Transaction
from .base import (
    tables,
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
    StorageError,
)

logger = logging.getLogger(__name__)

USER_DATE_INDEX = 'UserIdIndex'


def _user_key_condition(user_id: str, start_date_ts: Optional[int], end_date_ts: Optional[int]):
    key_condition = Key('userId').eq(user_id)
    if start_date_ts is not None and end_date_ts is not None:
        key_condition = key_condition & Key('date').between(start_date_ts, end_date_ts)
    elif start_date_ts is not None:
        key_condition = key_condition & Key('date').gte(start_date_ts)
    elif end_date_ts is not None:
        key_condition = key_condition & Key('date').lte(end_date_ts)
    return key_condition


def _to_transactions(items: List[Dict[str, Any]]) -> List[Transaction]:
    transactions = []
    for item in items:
        try:
            transactions.append(Transaction.from_dynamodb_item(item))
        except ValidationError as e:
            logger.warning(
                f"DB: Skipping unreadable transaction item {item.get('transactionId')}: {str(e)}"
            )
    return transactions


@monitor_performance(operation_type="query", warn_threshold_ms=1000)
@retry_on_throttle(max_attempts=3)
@dynamodb_operation("list_user_transactions_page")
def list_user_transactions_page(
    user_id: str,
    limit: int = 500,
    last_evaluated_key: Optional[Dict[str, Any]] = None,
    start_date_ts: Optional[int] = None,
    end_date_ts: Optional[int] = None
) -> Tuple[List[Transaction], Optional[Dict[str, Any]]]:
    """
    Fetch one page of a user's transactions, oldest first.

    Args:
        user_id: The user ID to query
        limit: Maximum number of items to read for this page
        last_evaluated_key: Key to start from for pagination
        start_date_ts: Start date filter (milliseconds since epoch, inclusive)
        end_date_ts: End date filter (milliseconds since epoch, inclusive)

    Returns:
        Tuple of (transactions, last_evaluated_key)
    """
    table = tables.transactions
    if not table:
        logger.error("TRANSACTIONS_TABLE is not configured.")
        raise StorageError("Transactions table not initialized", error_code="TableNotInitialized")

    query_params: Dict[str, Any] = {
        'IndexName': USER_DATE_INDEX,
        'KeyConditionExpression': _user_key_condition(user_id, start_date_ts, end_date_ts),
        'Limit': limit,
        'ScanIndexForward': True
    }
    if last_evaluated_key:
        query_params['ExclusiveStartKey'] = last_evaluated_key

    response = table.query(**query_params)
    return _to_transactions(response.get('Items', [])), response.get('LastEvaluatedKey')


def list_user_transactions(
    user_id: str,
    start_date_ts: Optional[int] = None,
    end_date_ts: Optional[int] = None,
    page_size: int = 500
) -> List[Transaction]:
    """
    List all of a user's transactions in a date range, following pagination.

    Each page is fetched (and retried) on its own so a throttled page does not
    restart the whole listing.
    """
    transactions: List[Transaction] = []
    last_key: Optional[Dict[str, Any]] = None
    while True:
        page, last_key = list_user_transactions_page(
            user_id,
            limit=page_size,
            last_evaluated_key=last_key,
            start_date_ts=start_date_ts,
            end_date_ts=end_date_ts
        )
        transactions.extend(page)
        if not last_key:
            break

    logger.info(f"DB: Loaded {len(transactions)} transactions for user {user_id}")
    return transactions
