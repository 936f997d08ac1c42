"""
Retry / Backoff Wrapper

Runs an async operation, retrying transient failures with exponentially
doubling delay. Terminal client errors (400/401/403/404-equivalent) are never
retried. When attempts are exhausted the last error is re-raised unchanged.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .errors import TerminalClientError

logger = logging.getLogger("standup.retry")

T = TypeVar("T")

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 0.5  # seconds, doubles each retry
TERMINAL_STATUS_CODES = frozenset([400, 401, 403, 404])
TERMINAL_STATUS_PATTERN = re.compile(r"\b(400|401|403|404)\b")


def is_terminal_error(error: BaseException) -> bool:
    """
    Decide whether an error must not be retried.

    Checked in order: explicit TerminalClientError, httpx status errors with
    a terminal code, then any message containing a standalone terminal code.
    """
    if isinstance(error, TerminalClientError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TERMINAL_STATUS_CODES
    return bool(TERMINAL_STATUS_PATTERN.search(str(error)))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    label: str = "API call",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Execute operation with retries.

    Args:
        operation: Zero-argument coroutine factory (called once per attempt)
        max_attempts: Total attempts including the first
        initial_delay: Delay before the second attempt; doubles afterwards
        label: Name used in log lines
        sleep: Sleep coroutine (injectable for tests)

    Returns:
        The operation's result

    Raises:
        The last error raised by operation
    """
    sleep = sleep or asyncio.sleep
    delay = initial_delay
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if is_terminal_error(e):
                logger.warning(f"{label} non-retryable error: {e}")
                raise
            if attempt >= max_attempts:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise
            logger.warning(
                f"{label} attempt {attempt}/{max_attempts} failed, retrying in {delay}s: {e}"
            )
            await sleep(delay)
            delay *= 2


async def best_effort(operation: Awaitable[T], default: T, label: str) -> T:
    """
    Await an independent fetch, degrading to default on failure.

    Used for context that enriches a flow but must never abort it.
    """
    try:
        return await operation
    except Exception as e:
        logger.warning(f"{label} unavailable, using default: {e}")
        return default
