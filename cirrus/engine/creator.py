"""Create-or-find for uniquely named resources under concurrent creators.

Another process, or an earlier half-finished attempt, may create the same
name first. The provider then reports a conflict, and the existing resource
is looked up instead. Right after such a conflict the winner's resource is
not always visible yet, so the create/find cycle is repeated with backoff,
a bounded number of times.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from cirrus.api.model import ScopedName
from cirrus.core.exceptions import CreationConflictError, CreationRaceUnresolvedError

log = logger.bind(component="creator")


@dataclass(frozen=True, slots=True)
class Created[V]:
    value: V


@dataclass(frozen=True, slots=True)
class Found[V]:
    value: V


@dataclass(frozen=True, slots=True)
class Conflict:
    error: CreationConflictError


@dataclass(frozen=True, slots=True)
class Exhausted:
    attempts: int
    last: Conflict


type Attempt[V] = Created[V] | Found[V] | Conflict
type Resolution[V] = Created[V] | Found[V] | Exhausted


def _is_conflict(result: object) -> bool:
    return isinstance(result, Conflict)


def _log_retry(state: RetryCallState) -> None:
    key = state.args[0] if state.args else "?"
    delay = state.next_action.sleep if state.next_action else 0.0
    log.debug(
        "{key} conflicted but is not visible yet, retry {n} in {d:.1f}s",
        key=key, n=state.attempt_number, d=delay,
    )


class ConflictRetryingCreator:
    """Bounded create/find loop.

    Args:
        max_attempts: Create/find cycles before giving up.
        base_delay: Delay after the first conflicting cycle; doubles each time.
        max_delay: Cap on the delay between cycles.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def attempt[V](
        self,
        key: ScopedName,
        create_fn: Callable[[], Awaitable[V]],
        find_fn: Callable[[], Awaitable[V | None]],
    ) -> Attempt[V]:
        """One create/find cycle. Errors other than conflicts propagate."""
        try:
            return Created(await create_fn())
        except CreationConflictError as e:
            log.debug("Creating {key} conflicted, looking it up", key=key)
            existing = await find_fn()
            if existing is not None:
                return Found(existing)
            return Conflict(e)

    async def resolve[V](
        self,
        key: ScopedName,
        create_fn: Callable[[], Awaitable[V]],
        find_fn: Callable[[], Awaitable[V | None]],
    ) -> Resolution[V]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_result(_is_conflict),
            before_sleep=_log_retry,
        )
        try:
            return await retrying(self.attempt, key, create_fn, find_fn)
        except RetryError as e:
            last = e.last_attempt.result()
            return Exhausted(attempts=e.last_attempt.attempt_number, last=last)

    async def create_or_find[V](
        self,
        key: ScopedName,
        create_fn: Callable[[], Awaitable[V]],
        find_fn: Callable[[], Awaitable[V | None]],
    ) -> V:
        match await self.resolve(key, create_fn, find_fn):
            case Created(value=value):
                log.info("Created {key}", key=key)
                return value
            case Found(value=value):
                log.info("Reusing {key} created concurrently", key=key)
                return value
            case Exhausted(attempts=attempts, last=last):
                log.error(
                    "Gave up on {key} after {n} conflicting attempts", key=key, n=attempts,
                )
                raise CreationRaceUnresolvedError(key, attempts) from last.error
