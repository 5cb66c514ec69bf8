"""
Database utilities for DynamoDB operations.

This module provides a clean interface for all database operations.
Imports are organized by resource type for easy navigation.
"""

# ============================================================================
# Core Infrastructure
# ============================================================================

from .base import (
    # Table management
    tables,
    DynamoDBTables,

    # Exceptions
    NotFound,
    ConflictError,
    StorageError,

    # Decorators
    dynamodb_operation,
    retry_on_throttle,
    monitor_performance,
)

# ============================================================================
# Resource Operations
# ============================================================================

from .transactions import (
    list_user_transactions,
    list_user_transactions_page,
)

from .subscriptions import (
    get_subscription_from_db,
    list_user_subscriptions_from_db,
    upsert_subscription_in_db,
)

from .merchant_aliases import (
    get_alias_from_db,
    list_aliases_from_db,
    create_alias_in_db,
    increment_alias_usage_in_db,
    record_alias_usage,
    save_alias_in_db,
)
