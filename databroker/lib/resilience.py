"""Opt-in retry for connectors.

The broker itself never retries: a source that fails is recorded as
degraded and the round moves on. Hosts that know a provider is flaky can
ask a connector to retry its own transport calls.

Only ``ConnectionError`` is retried by default. Format errors and sink
rejections are terminal and retrying them would only repeat the failure.

Implementation: Uses tenacity for the retry loop.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Tuple, Type

import tenacity
from tenacity.wait import wait_base

from databroker.lib.errors import ConnectionError

logger = logging.getLogger(__name__)

__all__ = ["RetryConfig", "retry_operation"]

RETRYABLE: Tuple[Type[Exception], ...] = (ConnectionError,)


def _wait_strategy(backoff_seconds: float, exponential: bool, jitter: bool) -> wait_base:
    wait: wait_base
    if exponential:
        # backoff_seconds * 2^(attempt-1)
        wait = tenacity.wait_exponential(multiplier=backoff_seconds, min=backoff_seconds)
    else:
        wait = tenacity.wait_fixed(backoff_seconds)
    if jitter:
        wait = wait + tenacity.wait_random(0, backoff_seconds * 0.5)
    return wait


class RetryConfig:
    """Configuration for connector retry behavior.

    Example:
        RestConnector("library", ..., retry=RetryConfig(max_attempts=5))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        exponential: bool = True,
        jitter: bool = True,
        retry_on: Tuple[Type[Exception], ...] = RETRYABLE,
    ):
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.exponential = exponential
        self.jitter = jitter
        self.retry_on = retry_on

    @classmethod
    def none(cls) -> "RetryConfig":
        """No retry - fail immediately."""
        return cls(max_attempts=1)

    @classmethod
    def default(cls) -> "RetryConfig":
        """Default retry: 3 attempts with exponential backoff."""
        return cls()

    @classmethod
    def aggressive(cls) -> "RetryConfig":
        """Aggressive retry: 5 attempts with longer backoff."""
        return cls(max_attempts=5, backoff_seconds=5.0)

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_attempts={self.max_attempts}, "
            f"backoff_seconds={self.backoff_seconds})"
        )


def retry_operation(
    operation: Callable[[], Any],
    config: Optional[RetryConfig],
    operation_name: str = "operation",
) -> Any:
    """Execute an operation with retry logic.

    Args:
        operation: Callable to execute
        config: Retry configuration; None runs the operation once
        operation_name: Name for logging

    Returns:
        Result of the operation

    Example:
        response = retry_operation(
            lambda: client.get("/books", params=params),
            RetryConfig.default(),
            "library fetch",
        )
    """
    if config is None or config.max_attempts <= 1:
        return operation()

    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            config.max_attempts,
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    retryer = tenacity.Retrying(
        stop=tenacity.stop_after_attempt(config.max_attempts),
        wait=_wait_strategy(config.backoff_seconds, config.exponential, config.jitter),
        retry=tenacity.retry_if_exception_type(config.retry_on),
        before_sleep=before_sleep_handler,
        reraise=True,
    )

    try:
        return retryer(operation)
    except config.retry_on:
        logger.error("%s failed after %d attempts", operation_name, config.max_attempts)
        raise
