"""State convergence engine for asynchronous ARM operations.

A resource handler issues a mutating call, then hands a refresh function to
StatusPoller to wait until the remote object reaches a target status:

    conf = StateChangeConf(
        pending={"Updating"},
        target={"Succeeded"},
        refresh=status_provisioning_state(client, resource_id, api_version),
        timeout=600,
        min_delay=1,
        max_delay=30,
    )
    resource = await wait_for_state(conf)

STATE MACHINE (per refresh):
- refresh error        -> RefreshError, never retried here
- status in target     -> success, returns the refreshed value
- status in pending    -> sleep (exponential backoff, capped), refresh again
- object absent        -> success if target is empty (deletion), pending if ""
                          is a pending status, else tolerated not_found_checks
                          times before ObjectNotFoundError
- anything else        -> UnexpectedStateError

TIMEOUT: a sleep never runs past the remaining budget. When the next delay
would cross the deadline, WaitTimeoutError is raised instead of refreshing.

CANCELLATION: an asyncio.Event checked before every refresh and every sleep.
Sleeping is done on the event itself, so setting it wakes the waiter at once.

The engine keeps no state between calls; each wait owns its own counters.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollOutcome:
    """Result of one refresh attempt.

    Attributes:
        value: The refreshed object, or None if it does not exist (absent).
        status: Remote status string; always "" for an absent object.
        error: Set when the refresh itself failed.
    """

    value: Any = None
    status: str = ""
    error: Exception | None = None

    def __post_init__(self) -> None:
        if self.value is None and self.status and self.error is None:
            raise ValueError(f"Absent outcome cannot carry status {self.status!r}")

    @property
    def is_absent(self) -> bool:
        return self.value is None

    @classmethod
    def absent(cls) -> PollOutcome:
        return cls()

    @classmethod
    def failed(cls, error: Exception) -> PollOutcome:
        return cls(error=error)


Refresh = Callable[[], PollOutcome | Awaitable[PollOutcome]]


# =============================================================================
# Errors
# =============================================================================


class StateChangeError(Exception):
    """Base class for every way a wait can end without reaching the target."""

    def __init__(
        self,
        message: str,
        *,
        expected: Iterable[str] = (),
        last_status: str = "",
        last_value: Any = None,
    ) -> None:
        super().__init__(message)
        self.expected = tuple(sorted(expected))
        self.last_status = last_status
        self.last_value = last_value
        # Remote diagnostic detail, see set_last_error()
        self.last_error: str | None = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.last_error:
            return f"{message}: {self.last_error}"
        return message


class RefreshError(StateChangeError):
    """The refresh function failed. Carries the underlying error."""

    def __init__(self, error: Exception, *, expected: Iterable[str] = ()) -> None:
        super().__init__(f"refreshing state: {error}", expected=expected)
        self.error = error


class UnexpectedStateError(StateChangeError):
    """Observed status is neither pending nor target."""

    def __init__(
        self,
        observed: str,
        *,
        expected: Iterable[str] = (),
        last_value: Any = None,
        message: str | None = None,
    ) -> None:
        expected = tuple(sorted(expected))
        super().__init__(
            message or f"unexpected state '{observed}', wanted target '{', '.join(expected)}'",
            expected=expected,
            last_status=observed,
            last_value=last_value,
        )
        self.observed = observed


class ObjectNotFoundError(UnexpectedStateError):
    """The object disappeared (or never appeared) while it was awaited."""

    def __init__(self, checks: int, *, expected: Iterable[str] = ()) -> None:
        super().__init__(
            "",
            expected=expected,
            message=f"couldn't find resource ({checks} retries)",
        )
        self.checks = checks


class WaitTimeoutError(StateChangeError, TimeoutError):
    """The timeout budget ran out while the object was still pending."""

    def __init__(
        self,
        timeout: float,
        *,
        expected: Iterable[str] = (),
        last_status: str = "",
        last_value: Any = None,
    ) -> None:
        expected = tuple(sorted(expected))
        super().__init__(
            f"timeout while waiting for state to become '{', '.join(expected)}' "
            f"(last state: '{last_status}', timeout: {timeout:g}s)",
            expected=expected,
            last_status=last_status,
            last_value=last_value,
        )
        self.timeout = timeout


class WaitCancelledError(StateChangeError):
    """The caller cancelled the wait."""

    def __init__(self, *, expected: Iterable[str] = (), last_status: str = "") -> None:
        super().__init__(
            f"wait cancelled (last state: '{last_status}')",
            expected=expected,
            last_status=last_status,
        )


def set_last_error(err: BaseException | None, detail: object) -> None:
    """Attach a remote diagnostic message to a timeout or unexpected-state error.

    Handlers call this with the status message of the last refreshed object so
    the rendered error explains why the object never converged.
    """
    if not detail:
        return
    if isinstance(err, (WaitTimeoutError, UnexpectedStateError)):
        err.last_error = str(detail)


# =============================================================================
# Configuration
# =============================================================================


def backoff_delays(
    min_delay: float,
    max_delay: float,
    factor: float = 2.0,
) -> Iterator[float]:
    """Yield non-decreasing delays from ``min_delay``, capped at ``max_delay``.

    ``factor`` 1.0 yields a fixed interval.
    """
    delay = min_delay
    while True:
        yield min(delay, max_delay)
        if delay < max_delay:
            delay *= factor


@dataclass(frozen=True)
class StateChangeConf:
    """Everything one wait needs. Built per call, never shared.

    Attributes:
        pending: Statuses meaning "still converging". Include "" to treat an
                 absent object as not created yet.
        target: Statuses meaning "done". Empty means waiting for the object
                to disappear.
        refresh: Zero-argument callable returning a PollOutcome, or an
                 awaitable of one.
        timeout: Total budget in seconds.
        min_delay: First delay between refreshes, in seconds.
        max_delay: Upper bound for the delay between refreshes.
        backoff_factor: Delay multiplier after each pending refresh.
        initial_delay: Sleep before the first refresh.
        not_found_checks: Consecutive absent observations tolerated.
        continuous_target_occurrence: Consecutive target observations required.
        description: Name of the awaited object for log messages.
    """

    pending: frozenset[str]
    target: frozenset[str]
    refresh: Refresh
    timeout: float
    min_delay: float
    max_delay: float
    backoff_factor: float = 2.0
    initial_delay: float = 0.0
    not_found_checks: int = 0
    continuous_target_occurrence: int = 1
    description: str = field(default="resource", compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "pending", frozenset(self.pending))
        object.__setattr__(self, "target", frozenset(self.target))

        errors: list[str] = []
        overlap = self.pending & self.target
        if overlap:
            errors.append(f"statuses cannot be both pending and target: {sorted(overlap)}")
        if self.timeout <= 0:
            errors.append("timeout must be positive")
        if self.min_delay <= 0:
            errors.append("min_delay must be positive")
        if self.max_delay < self.min_delay:
            errors.append("max_delay must not be lower than min_delay")
        if self.backoff_factor < 1:
            errors.append("backoff_factor must be at least 1")
        if self.initial_delay < 0:
            errors.append("initial_delay must not be negative")
        if self.not_found_checks < 0:
            errors.append("not_found_checks must not be negative")
        if self.continuous_target_occurrence < 1:
            errors.append("continuous_target_occurrence must be at least 1")

        if errors:
            raise ValueError("Invalid state change configuration: " + "; ".join(errors))


# =============================================================================
# Poller
# =============================================================================


class StatusPoller:
    """Waits for a refresh function to report a target status.

    The clock and sleep are injectable so tests can drive time explicitly.
    Instances hold no per-wait state and can be shared between tasks.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._clock = clock
        self._sleep_fn = sleep

    async def wait(
        self,
        conf: StateChangeConf,
        *,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Refresh until ``conf.target`` is reached.

        Args:
            conf: The state change to await.
            cancel: Set by the caller to abandon the wait.

        Returns:
            The value of the last refresh, or None when waiting for deletion.

        Raises:
            RefreshError: The refresh function reported or raised an error.
            UnexpectedStateError: A status outside pending and target was seen.
            ObjectNotFoundError: The object stayed absent too long.
            WaitTimeoutError: The budget ran out while still pending.
            WaitCancelledError: ``cancel`` was set.
        """
        start = self._clock()
        delays = backoff_delays(conf.min_delay, conf.max_delay, conf.backoff_factor)
        last = PollOutcome()
        not_found = 0
        target_hits = 0
        attempt = 0

        if conf.initial_delay > 0:
            self._check_budget(conf, start, conf.initial_delay, last)
            await self._sleep(conf, conf.initial_delay, cancel, last)

        while True:
            self._check_cancel(conf, cancel, last)
            attempt += 1

            outcome = await _call_refresh(conf)
            if outcome.error is not None:
                raise RefreshError(outcome.error, expected=conf.target) from outcome.error
            last = outcome

            logger.debug(
                "Refreshed %s",
                conf.description,
                extra={"status": outcome.status, "attempt": attempt},
            )

            if outcome.is_absent:
                target_hits = 0
                if not conf.target or "" in conf.target:
                    return None
                if "" not in conf.pending:
                    not_found += 1
                    if not_found > conf.not_found_checks:
                        logger.warning(
                            "%s not found",
                            conf.description,
                            extra={"attempt": attempt, "not_found_checks": conf.not_found_checks},
                        )
                        raise ObjectNotFoundError(not_found, expected=conf.target)
            elif outcome.status in conf.target:
                not_found = 0
                target_hits += 1
                if target_hits >= conf.continuous_target_occurrence:
                    return outcome.value
            elif outcome.status in conf.pending:
                not_found = 0
                target_hits = 0
            else:
                logger.warning(
                    "%s reached unexpected state",
                    conf.description,
                    extra={"status": outcome.status, "expected": sorted(conf.target)},
                )
                raise UnexpectedStateError(
                    outcome.status,
                    expected=conf.target,
                    last_value=outcome.value,
                )

            delay = next(delays)
            self._check_budget(conf, start, delay, last)
            logger.debug(
                "Waiting for %s",
                conf.description,
                extra={"status": last.status, "attempt": attempt, "delay_seconds": delay},
            )
            await self._sleep(conf, delay, cancel, last)

    def _check_budget(
        self,
        conf: StateChangeConf,
        start: float,
        delay: float,
        last: PollOutcome,
    ) -> None:
        elapsed = self._clock() - start
        if elapsed + delay > conf.timeout:
            logger.warning(
                "Timed out waiting for %s",
                conf.description,
                extra={
                    "status": last.status,
                    "elapsed_seconds": elapsed,
                    "timeout_seconds": conf.timeout,
                },
            )
            raise WaitTimeoutError(
                conf.timeout,
                expected=conf.target,
                last_status=last.status,
                last_value=last.value,
            )

    def _check_cancel(
        self,
        conf: StateChangeConf,
        cancel: asyncio.Event | None,
        last: PollOutcome,
    ) -> None:
        if cancel is not None and cancel.is_set():
            raise WaitCancelledError(expected=conf.target, last_status=last.status)

    async def _sleep(
        self,
        conf: StateChangeConf,
        delay: float,
        cancel: asyncio.Event | None,
        last: PollOutcome,
    ) -> None:
        self._check_cancel(conf, cancel, last)

        if self._sleep_fn is not None:
            await self._sleep_fn(delay)
        elif cancel is None:
            await asyncio.sleep(delay)
        else:
            try:
                await asyncio.wait_for(cancel.wait(), timeout=delay)
            except TimeoutError:
                # Normal timeout, refresh again
                return

        self._check_cancel(conf, cancel, last)


async def _call_refresh(conf: StateChangeConf) -> PollOutcome:
    try:
        result = conf.refresh()
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        raise RefreshError(e, expected=conf.target) from e
    if not isinstance(result, PollOutcome):
        raise TypeError(f"refresh must return PollOutcome, got {type(result).__name__}")
    return result


_default_poller = StatusPoller()


async def wait_for_state(conf: StateChangeConf, *, cancel: asyncio.Event | None = None) -> Any:
    """Wait with the default poller (real clock, interruptible sleeps)."""
    return await _default_poller.wait(conf, cancel=cancel)
