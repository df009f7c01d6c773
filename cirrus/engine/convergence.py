"""Polling a resource until a status predicate holds.

The loop reports how polling ended instead of raising, so callers fanning
out over many nodes can sort successes from failures without unwinding
through exceptions. ``require`` turns an outcome back into a value or an
exception for callers that only care about one resource.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from cirrus.api.model import StatusfulResource
from cirrus.api.provider import RefreshableResource
from cirrus.core.exceptions import (
    ConvergenceCancelledError,
    ConvergenceTimeoutError,
    InvalidTerminalStatusError,
)
from cirrus.engine.predicate import StatusPredicate

log = logger.bind(component="convergence")

MIN_INTERVAL = 0.01


class CancelToken:
    """Caller-owned signal to stop polling.

    Waiting on the token doubles as the sleep between polls, so setting it
    wakes every loop sharing it immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except TimeoutError:
            return False
        return True


@dataclass(frozen=True, slots=True)
class Converged[R]:
    resource: R | None
    attempts: int
    elapsed: float


@dataclass(frozen=True, slots=True)
class TimedOut[R]:
    resource: R
    attempts: int
    elapsed: float


@dataclass(frozen=True, slots=True)
class Invalid[R]:
    resource: R
    status: str
    reason: str


@dataclass(frozen=True, slots=True)
class Cancelled[R]:
    resource: R
    attempts: int
    elapsed: float


type Outcome[R] = Converged[R] | TimedOut[R] | Invalid[R] | Cancelled[R]


class ConvergenceLoop[S: StrEnum, R: StatusfulResource]:
    """Retries a StatusPredicate until it matches, fails or time runs out.

    Args:
        predicate: The check to repeat.
        interval: Delay before the second poll.
        max_wait: Time budget in seconds, measured from the first poll.
        max_interval: Upper bound for the delay when backing off.
        backoff: Multiplier applied to the delay after each poll.
        clock: Monotonic clock, defaults to the event loop's.
    """

    def __init__(
        self,
        predicate: StatusPredicate[S, R],
        *,
        interval: float,
        max_wait: float,
        max_interval: float | None = None,
        backoff: float = 1.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_wait < 0:
            raise ValueError("max_wait must be >= 0")
        if backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")
        self.predicate = predicate
        self.interval = max(interval, MIN_INTERVAL)
        self.max_interval = max(max_interval or self.interval, self.interval)
        self.max_wait = max_wait
        self.backoff = backoff
        self._clock = clock

    async def run(self, resource: R, cancel: CancelToken | None = None) -> Outcome[R]:
        clock = self._clock or asyncio.get_running_loop().time
        start = clock()
        deadline = start + self.max_wait
        delay = self.interval
        current = resource
        attempts = 0

        while True:
            if cancel is not None and cancel.cancelled:
                log.debug("Stopped polling {ref}: cancelled", ref=current.ref)
                return Cancelled(current, attempts, clock() - start)

            attempts += 1
            try:
                result = await self.predicate.check(current)
            except InvalidTerminalStatusError as e:
                return Invalid(e.resource, e.status, str(e))

            if result.matched:
                elapsed = clock() - start
                log.debug(
                    "{ref} reached {target} after {n} poll(s) in {t:.1f}s",
                    ref=current.ref, target=self.predicate.target, n=attempts, t=elapsed,
                )
                return Converged(result.resource, attempts, elapsed)

            assert result.resource is not None
            current = result.resource

            remaining = deadline - clock()
            if remaining <= 0:
                elapsed = clock() - start
                log.warning(
                    "{ref} still {status} after {t:.1f}s waiting for {target}",
                    ref=current.ref, status=current.status, t=elapsed, target=self.predicate.target,
                )
                return TimedOut(current, attempts, elapsed)

            wait = max(MIN_INTERVAL, min(delay, remaining))
            if cancel is not None:
                if await cancel.wait(wait):
                    log.debug("Stopped polling {ref}: cancelled", ref=current.ref)
                    return Cancelled(current, attempts, clock() - start)
            else:
                await asyncio.sleep(wait)
            delay = min(delay * self.backoff, self.max_interval)


def require[R: StatusfulResource](outcome: Outcome[R], *, max_wait: float | None = None) -> R | None:
    """Return the converged resource or raise the matching error."""
    match outcome:
        case Converged(resource=resource):
            return resource
        case Invalid(resource=resource, status=status):
            raise InvalidTerminalStatusError(resource.ref, status, resource=resource)
        case TimedOut(resource=resource, elapsed=elapsed):
            raise ConvergenceTimeoutError(
                resource.ref, str(resource.status), max_wait if max_wait is not None else elapsed,
            )
        case Cancelled(resource=resource):
            raise ConvergenceCancelledError(resource.ref)


async def await_status[S: StrEnum, R: StatusfulResource](
    refresh: RefreshableResource[R],
    resource: R,
    target: S,
    invalid: Iterable[S] = (),
    *,
    interval: float,
    max_wait: float,
    cancel: CancelToken | None = None,
    deleted_ok: bool = False,
) -> Outcome[R]:
    """Build a predicate and loop for a single wait."""
    predicate = StatusPredicate(refresh, target, invalid, deleted_ok=deleted_ok)
    loop = ConvergenceLoop(predicate, interval=interval, max_wait=max_wait)
    return await loop.run(resource, cancel)
