from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from ..errors import AccountFrozen, BatchInvariantViolation, LedgerError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# An operator has to step in before these can succeed
NOT_RETRYABLE: Tuple[Type[LedgerError], ...] = (BatchInvariantViolation, AccountFrozen)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff: float = 1.0,
    give_up_on: Tuple[Type[BaseException], ...] = NOT_RETRYABLE,
    label: str = "ledger operation",
) -> T:
    """
    Run `operation`, retrying `LedgerError`s with exponential backoff and jitter.

    Errors in `give_up_on` are raised at once. After the last attempt the
    final error is raised; logging it is left to the caller.

    Args:
        operation: Async callable to execute
        attempts: Maximum number of attempts
        backoff: Initial backoff delay in seconds (doubles each retry)
        give_up_on: Error types that are never retried
        label: Name of the operation in log messages
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except give_up_on:
            raise
        except LedgerError as exc:
            if attempt >= attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            delay += random.uniform(0, delay * 0.1)
            logger.warning(
                "%s failed on attempt %d/%d (%s), retrying in %.2fs",
                label,
                attempt,
                attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1
