"""Eventual-consistency retries built on the state convergence engine.

ARM reads are eventually consistent: a resource that was just created can
return 404 for a few seconds. These helpers re-run an operation while it
fails with a retryable error, using StatusPoller for the backoff, timeout
budget and cancellation.

Throttling and transient 5xx responses are retried by the SDK pipeline
itself and need no handling here.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from azure.core.exceptions import ResourceNotFoundError

from .waiter import (
    PollOutcome,
    RefreshError,
    StateChangeConf,
    StatusPoller,
    WaitTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE = "retryable"
_SUCCESS = "success"


class _Success:
    """Box for the operation result, so a None result still counts as present."""

    __slots__ = ("result",)

    def __init__(self, result: Any) -> None:
        self.result = result


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, ResourceNotFoundError)


async def retry_when(
    operation: Callable[[], T | Awaitable[T]],
    *,
    timeout: float,
    is_retryable: Callable[[BaseException], bool],
    min_delay: float = 1.0,
    max_delay: float = 10.0,
    cancel: asyncio.Event | None = None,
    poller: StatusPoller | None = None,
) -> T:
    """Run ``operation`` until it succeeds or fails with a non-retryable error.

    Args:
        operation: Zero-argument callable, sync or async.
        timeout: Total budget in seconds.
        is_retryable: Decides whether an error is worth another attempt.
        min_delay: First delay between attempts.
        max_delay: Upper bound for the delay between attempts.
        cancel: Set by the caller to abandon the retries.
        poller: StatusPoller to use, the default one if None.

    Returns:
        The result of the first successful attempt.

    Raises:
        Exception: A non-retryable error from ``operation``, as is; or the last
            retryable error once the budget runs out, chained from the
            WaitTimeoutError.
    """
    last_error: BaseException | None = None

    async def refresh() -> PollOutcome:
        nonlocal last_error
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            if is_retryable(e):
                last_error = e
                logger.debug(
                    "Retryable error",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                return PollOutcome(value=e, status=_RETRYABLE)
            return PollOutcome.failed(e)
        return PollOutcome(value=_Success(result), status=_SUCCESS)

    conf = StateChangeConf(
        pending={_RETRYABLE},
        target={_SUCCESS},
        refresh=refresh,
        timeout=timeout,
        min_delay=min_delay,
        max_delay=max_delay,
        description="retryable operation",
    )

    try:
        boxed: _Success = await (poller or StatusPoller()).wait(conf, cancel=cancel)
    except RefreshError as e:
        raise e.error from None
    except WaitTimeoutError as e:
        if last_error is not None:
            raise last_error from e
        raise

    return boxed.result


async def retry_when_not_found(
    operation: Callable[[], T | Awaitable[T]],
    *,
    timeout: float,
    min_delay: float = 1.0,
    max_delay: float = 10.0,
    cancel: asyncio.Event | None = None,
    poller: StatusPoller | None = None,
) -> T:
    """Retry while ``operation`` raises ResourceNotFoundError.

    Used right after a create, when reads may not see the new resource yet.
    """
    return await retry_when(
        operation,
        timeout=timeout,
        is_retryable=is_not_found,
        min_delay=min_delay,
        max_delay=max_delay,
        cancel=cancel,
        poller=poller,
    )
