"""Timeout and retry helpers for calls to external services."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class OperationTimeoutError(Exception):
    """An awaited external call ran past its timeout."""
    retryable = True

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout}s")


async def with_timeout(awaitable: Awaitable, timeout: float, operation: str = "operation") -> Any:
    """Await with a deadline, raising OperationTimeoutError when it passes."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(operation, timeout)


def is_retryable(exc: Exception) -> bool:
    return bool(getattr(exc, "retryable", True))


async def execute_with_retry(
    func: Callable[[], Awaitable[Any]],
    operation: str,
    max_retries: int = 3,
    base_delay: float = 0.3,
    timeout: Optional[float] = None,
    should_retry: Callable[[Exception], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Call func up to max_retries times.

    Each call gets its own timeout. Delay between attempts grows
    linearly (base_delay * attempt). Errors with retryable=False are
    raised immediately.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    attempt = 1
    while True:
        try:
            if timeout is not None:
                return await with_timeout(func(), timeout, operation)
            return await func()
        except Exception as e:
            if not should_retry(e) or attempt >= max_retries:
                raise
            logger.warning(f"{operation} failed (attempt {attempt}/{max_retries}): {e}")
            await sleep(base_delay * attempt)
            attempt += 1
