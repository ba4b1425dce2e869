"""Tests for eventual-consistency retries."""

from __future__ import annotations

import asyncio

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from armsync.retry import is_not_found, retry_when, retry_when_not_found
from armsync.waiter import WaitCancelledError, WaitTimeoutError


class FlakyOperation:
    """Raises the queued errors first, then returns ``result``."""

    def __init__(self, *errors: Exception, result: object = "done") -> None:
        self._errors = list(errors)
        self._result = result
        self.calls = 0

    def __call__(self) -> object:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._result


def not_found() -> ResourceNotFoundError:
    return ResourceNotFoundError(message="not found")


class TestRetryWhen:
    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, poller, clock) -> None:
        operation = FlakyOperation()

        result = await retry_when(operation, timeout=60, is_retryable=is_not_found, poller=poller)

        assert result == "done"
        assert operation.calls == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_until_success(self, poller, clock) -> None:
        operation = FlakyOperation(not_found(), not_found())

        result = await retry_when(operation, timeout=60, is_retryable=is_not_found, poller=poller)

        assert result == "done"
        assert operation.calls == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_none_result_is_success(self, poller) -> None:
        operation = FlakyOperation(not_found(), result=None)

        result = await retry_when(operation, timeout=60, is_retryable=is_not_found, poller=poller)

        assert result is None
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_as_is(self, poller) -> None:
        error = HttpResponseError(message="forbidden")
        operation = FlakyOperation(not_found(), error)

        with pytest.raises(HttpResponseError) as exc_info:
            await retry_when(operation, timeout=60, is_retryable=is_not_found, poller=poller)

        assert exc_info.value is error
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_raises_last_retryable_error(self, poller) -> None:
        operation = FlakyOperation(*[not_found() for _ in range(100)])

        with pytest.raises(ResourceNotFoundError) as exc_info:
            await retry_when(operation, timeout=5, is_retryable=is_not_found, poller=poller)

        assert isinstance(exc_info.value.__cause__, WaitTimeoutError)

    @pytest.mark.asyncio
    async def test_async_operation(self, poller) -> None:
        attempts = 0

        async def operation() -> int:
            nonlocal attempts
            attempts += 1
            if attempts < 2:
                raise not_found()
            return attempts

        assert await retry_when_not_found(operation, timeout=60, poller=poller) == 2

    @pytest.mark.asyncio
    async def test_cancel(self, poller) -> None:
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(WaitCancelledError):
            await retry_when_not_found(FlakyOperation(), timeout=60, cancel=cancel, poller=poller)


def test_is_not_found() -> None:
    assert is_not_found(not_found())
    assert not is_not_found(HttpResponseError(message="boom"))
