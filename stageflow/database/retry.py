"""
Session Store Retries
=====================

``with_retry`` wraps repository coroutines so that a dropped connection, a
failover or a serialization conflict costs a short backoff instead of a
failed turn. Only transient failures are retried; anything else (bad data,
constraint violations) propagates on the first attempt.

Counters kept here are reported under ``database_retries`` by the API health
endpoint.

Usage:
    @with_retry(RetryConfig(max_retries=5, base_delay=0.5))
    async def get(self, session_id):
        ...
"""

import asyncio
import random
from dataclasses import dataclass, asdict
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar, cast

import asyncpg

from stageflow.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


@dataclass
class RetryConfig:
    """Backoff settings: base_delay * exponential_base**attempt, capped, with +/- jitter."""
    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1  # fraction of the delay


# SQLSTATE classes where every code is worth another attempt
TRANSIENT_SQLSTATE_CLASSES = ('08',)  # connection exception

TRANSIENT_SQLSTATES = frozenset({
    '40001',  # serialization_failure
    '40P01',  # deadlock_detected
    '53300',  # too_many_connections
    '57P01',  # admin_shutdown
    '57P03',  # cannot_connect_now
})

TRANSIENT_ERROR_TYPES = (
    asyncpg.InterfaceError,
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
    ConnectionError,
)

# Driver errors that only say what happened in their message
TRANSIENT_MESSAGES = (
    'connection refused',
    'connection reset',
    'connection closed',
    'broken pipe',
    'temporary failure',
    'too many connections',
    'deadlock',
)


def is_transient_error(error: BaseException) -> bool:
    """True when retrying the same operation has a chance of succeeding."""
    sqlstate = getattr(error, 'sqlstate', None)
    if isinstance(error, asyncpg.PostgresError) and sqlstate:
        if sqlstate in TRANSIENT_SQLSTATES or sqlstate.startswith(TRANSIENT_SQLSTATE_CLASSES):
            return True
    if isinstance(error, TRANSIENT_ERROR_TYPES):
        return True
    message = str(error).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Seconds to wait before retry number ``attempt`` (0 for the first retry).

    Never negative, whatever the jitter range.
    """
    delay = min(config.base_delay * config.exponential_base ** attempt, config.max_delay)
    if config.jitter:
        spread = delay * config.jitter_range
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)


@dataclass
class RetryStats:
    total_operations: int = 0
    failed_operations: int = 0
    retried_operations: int = 0
    total_retries: int = 0

    def record(self, attempts: int, succeeded: bool) -> None:
        self.total_operations += 1
        self.total_retries += attempts - 1
        if not succeeded:
            self.failed_operations += 1
        elif attempts > 1:
            self.retried_operations += 1

    @property
    def success_rate(self) -> float:
        if not self.total_operations:
            return 1.0
        return (self.total_operations - self.failed_operations) / self.total_operations

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), 'success_rate': self.success_rate}


_stats = RetryStats()


def get_retry_stats() -> Dict[str, Any]:
    return _stats.to_dict()


def reset_retry_stats() -> None:
    global _stats
    _stats = RetryStats()


def with_retry(config: Optional[RetryConfig] = None) -> Callable[[F], F]:
    """
    Retry an async repository operation on transient failures.

    Args:
        config: Backoff settings (defaults to RetryConfig())

    The final error is re-raised unchanged once retries run out.
    """
    settings = config or RetryConfig()

    def decorator(func: F) -> F:
        operation = func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    retryable = attempt < settings.max_retries and is_transient_error(e)
                    detail = {"operation": operation, "attempt": attempt + 1,
                              "error": str(e) or type(e).__name__}
                    if not retryable:
                        _stats.record(attempt + 1, succeeded=False)
                        logger.error("database.operation.failed", extra=detail)
                        raise
                    delay = calculate_delay(attempt, settings)
                    logger.warning("database.operation.retrying", extra={**detail, "delay": round(delay, 2)})
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue

                _stats.record(attempt + 1, succeeded=True)
                if attempt:
                    logger.info("database.operation.recovered", extra={"operation": operation, "retries": attempt})
                return result

        return cast(F, wrapper)

    return decorator
