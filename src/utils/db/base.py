"""
Core database infrastructure.

This module provides:
- DynamoDB table management
- Decorators for cross-cutting concerns
- Common exceptions
- Base helper functions
"""

import os
import logging
import boto3
import time
from typing import Dict, Any, Optional, Tuple, Callable, TypeVar
from functools import wraps
from botocore.config import Config
from botocore.exceptions import ClientError, BotoCoreError
from pydantic import ValidationError

# Configure logging
logger = logging.getLogger(__name__)

# Type variables
T = TypeVar('T')

# ============================================================================
# Exceptions
# ============================================================================

class NotFound(Exception):
    """Raised when a requested resource is not found."""
    pass

class ConflictError(Exception):
    """Raised when there's a conflict (e.g., optimistic locking failure)."""
    pass

class StorageError(Exception):
    """Raised when a DynamoDB read or write fails."""

    def __init__(self, message: str, operation: Optional[str] = None, error_code: str = "Unknown"):
        super().__init__(message)
        self.operation = operation
        self.error_code = error_code


# ============================================================================
# Decorators
# ============================================================================

def dynamodb_operation(operation_name: Optional[str] = None):
    """
    Decorator for consistent DynamoDB error handling and logging.

    Features:
    - Automatic error logging with stack traces
    - Structured logging with operation context
    - botocore failures surface as StorageError carrying the AWS error code
    - Debug-level entry/exit logging

    Usage:
        @dynamodb_operation("get_subscription")
        def get_subscription(user_id: str, subscription_id: uuid.UUID) -> Optional[Subscription]:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            op_name = operation_name or func.__name__
            try:
                logger.debug(f"Starting {op_name}")
                result = func(*args, **kwargs)
                logger.debug(f"Successfully completed {op_name}")
                return result
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                error_msg = e.response.get('Error', {}).get('Message', str(e))
                if error_code == 'ConditionalCheckFailedException':
                    raise ConflictError(f"Conditional write failed in {op_name}") from e
                logger.error(
                    f"DynamoDB error in {op_name}: {error_code} - {error_msg}",
                    exc_info=True,
                    extra={
                        'operation': op_name,
                        'error_code': error_code,
                        'function': func.__name__
                    }
                )
                raise StorageError(
                    f"DynamoDB error in {op_name}: {error_code} - {error_msg}",
                    operation=op_name,
                    error_code=error_code
                ) from e
            except BotoCoreError as e:
                error_code = type(e).__name__
                logger.error(
                    f"botocore error in {op_name}: {str(e)}",
                    exc_info=True,
                    extra={'operation': op_name, 'error_code': error_code}
                )
                raise StorageError(
                    f"Storage unavailable in {op_name}: {str(e)}",
                    operation=op_name,
                    error_code=error_code
                ) from e
            except ValidationError as e:
                logger.error(
                    f"Validation error in {op_name}: {str(e)}",
                    exc_info=True,
                    extra={'operation': op_name}
                )
                raise ValueError(f"Invalid data in {op_name}: {str(e)}")
        return wrapper
    return decorator


RETRYABLE_ERROR_CODES: Tuple[str, ...] = (
    'ProvisionedThroughputExceededException',
    'ThrottlingException',
    'RequestLimitExceeded',
    'InternalServerError',
    'ReadTimeoutError',
    'ConnectTimeoutError',
    'EndpointConnectionError',
)


def retry_on_throttle(
    max_attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    exponential_base: float = 2,
    retry_on: Tuple[str, ...] = RETRYABLE_ERROR_CODES
):
    """
    Decorator to retry DynamoDB operations on throttling or timeouts with exponential backoff.

    Only idempotent operations (gets, queries, full-item puts, counter upserts
    guarded by conditions) are decorated with it.

    Algorithm:
        Attempt 1: immediate
        Attempt 2: wait base_delay * (2^0) = 0.1s
        Attempt 3: wait base_delay * (2^1) = 0.2s
        ...
        Up to max_delay

    Usage:
        @retry_on_throttle(max_attempts=5, base_delay=0.1)
        @dynamodb_operation("list_user_subscriptions")
        def list_user_subscriptions(...):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except StorageError as e:
                    if e.error_code not in retry_on or attempt >= max_attempts - 1:
                        raise
                    delay = min(
                        base_delay * (exponential_base ** attempt),
                        max_delay
                    )
                    logger.warning(
                        f"Throttled on {func.__name__} "
                        f"(attempt {attempt + 1}/{max_attempts}), "
                        f"retrying in {delay:.2f}s... "
                        f"Error: {e.error_code}"
                    )
                    time.sleep(delay)
            raise RuntimeError(f"Unexpected state in retry_on_throttle for {func.__name__}")
        return wrapper
    return decorator


def monitor_performance(
    operation_type: str = "db_operation",
    warn_threshold_ms: float = 1000,
    error_threshold_ms: float = 5000
):
    """
    Decorator to monitor and log operation performance.

    Thresholds:
    - Debug: < warn_threshold_ms (normal operation)
    - Warning: warn_threshold_ms to error_threshold_ms (slow)
    - Error: > error_threshold_ms (very slow, investigate)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            start_time = time.time()

            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = (time.time() - start_time) * 1000

                log_context = {
                    'operation': func.__name__,
                    'operation_type': operation_type,
                    'elapsed_ms': elapsed_ms
                }

                if elapsed_ms > error_threshold_ms:
                    logger.error(
                        f"SLOW OPERATION: {func.__name__} took {elapsed_ms:.2f}ms "
                        f"(threshold: {error_threshold_ms}ms)",
                        extra=log_context
                    )
                elif elapsed_ms > warn_threshold_ms:
                    logger.warning(
                        f"Slow operation: {func.__name__} took {elapsed_ms:.2f}ms "
                        f"(threshold: {warn_threshold_ms}ms)",
                        extra=log_context
                    )
                else:
                    logger.debug(
                        f"{func.__name__} completed in {elapsed_ms:.2f}ms",
                        extra=log_context
                    )
        return wrapper
    return decorator


# ============================================================================
# Table Management
# ============================================================================

def _client_config() -> Config:
    """botocore config with bounded timeouts; retries are handled by retry_on_throttle."""
    return Config(
        connect_timeout=float(os.environ.get('DYNAMODB_CONNECT_TIMEOUT', '2')),
        read_timeout=float(os.environ.get('DYNAMODB_READ_TIMEOUT', '5')),
        retries={'max_attempts': 1, 'mode': 'standard'}
    )


class DynamoDBTables:
    """
    Singleton for managing DynamoDB table resources.

    Features:
    - Lazy initialization (resource and tables created on first access)
    - Singleton pattern (one instance per process)
    - Automatic table name lookup from environment variables
    - Property-based access for clean syntax

    Usage:
        tables = DynamoDBTables()
        subscriptions = tables.subscriptions
    """
    _instance: Optional['DynamoDBTables'] = None

    # Table name to environment variable mapping
    TABLE_CONFIGS = {
        'transactions': 'TRANSACTIONS_TABLE',
        'subscriptions': 'SUBSCRIPTIONS_TABLE',
        'merchant_aliases': 'MERCHANT_ALIASES_TABLE',
    }

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self._dynamodb: Optional[Any] = None
            self._tables: Dict[str, Any] = {}
            self._initialized = True

    def _resource(self) -> Any:
        if self._dynamodb is None:
            self._dynamodb = boto3.resource('dynamodb', config=_client_config())
        return self._dynamodb

    def _get_table(self, table_key: str) -> Optional[Any]:
        """Get table resource with lazy initialization."""
        if table_key not in self._tables:
            env_var_name = self.TABLE_CONFIGS.get(table_key)
            if not env_var_name:
                logger.error(f"Unknown table key: {table_key}")
                return None

            table_name = os.environ.get(env_var_name)
            if not table_name:
                logger.warning(
                    f"Environment variable {env_var_name} not set, "
                    f"table '{table_key}' unavailable"
                )
                return None

            self._tables[table_key] = self._resource().Table(table_name)
            logger.info(f"Initialized table: {table_key} ({table_name})")

        return self._tables.get(table_key)

    @property
    def transactions(self) -> Any:
        """Get transactions table."""
        return self._get_table('transactions')

    @property
    def subscriptions(self) -> Any:
        """Get subscriptions table."""
        return self._get_table('subscriptions')

    @property
    def merchant_aliases(self) -> Any:
        """Get merchant aliases table."""
        return self._get_table('merchant_aliases')

    def reinitialize(self):
        """Reinitialize DynamoDB resource (useful for testing)."""
        self._dynamodb = None
        self._tables.clear()
        logger.info("Reinitialized DynamoDB tables")


# Global instance
tables = DynamoDBTables()

