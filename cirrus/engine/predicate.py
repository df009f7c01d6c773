"""Refresh-and-double-check status predicates.

A predicate answers "has this resource reached status S?" starting from the
caller's last observation. The cached observation is checked first so a
caller holding fresh data pays no remote call; otherwise the resource is
refreshed and the fresh observation is handed back whether or not it
matched, so the caller never keeps acting on a stale view.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from cirrus.api.model import (
    Image,
    ImageStatus,
    Node,
    NodeStatus,
    StatusfulResource,
)
from cirrus.api.provider import RefreshableResource
from cirrus.core.exceptions import InvalidTerminalStatusError, TransportError

log = logger.bind(component="predicate")


@dataclass(frozen=True, slots=True)
class PredicateResult[R]:
    """Outcome of one check.

    ``resource`` is the freshest observation available; it is None only
    when the resource is gone and deletion counts as a match.
    """

    matched: bool
    resource: R | None


class StatusPredicate[S: StrEnum, R: StatusfulResource]:
    """Checks whether a resource has reached ``target``.

    Args:
        refresh: Fetches the latest observation, None when not found.
        target: Status that counts as converged.
        invalid: Statuses from which the resource can never reach target.
        deleted_ok: Treat a vanished resource as a match (TrueIfDeleted).
    """

    def __init__(
        self,
        refresh: RefreshableResource[R],
        target: S,
        invalid: Iterable[S] = (),
        *,
        deleted_ok: bool = False,
    ) -> None:
        self.refresh = refresh
        self.target = target
        self.invalid = frozenset(invalid)
        self.deleted_ok = deleted_ok
        if target in self.invalid:
            raise ValueError(f"Target status {target} cannot also be invalid")

    @classmethod
    def true_if_deleted(
        cls,
        refresh: RefreshableResource[R],
        target: S,
        invalid: Iterable[S] = (),
    ) -> StatusPredicate[S, R]:
        return cls(refresh, target, invalid, deleted_ok=True)

    def __repr__(self) -> str:
        variant = ", deleted_ok" if self.deleted_ok else ""
        return f"StatusPredicate({self.target}, invalid={sorted(self.invalid)}{variant})"

    async def check(self, cached: R) -> PredicateResult[R]:
        if cached.status == self.target:
            return PredicateResult(matched=True, resource=cached)

        try:
            fresh = await self.refresh(cached.ref)
        except TransportError as e:
            log.debug(
                "Refresh of {ref} failed, treating as not yet {target}: {err}",
                ref=cached.ref, target=self.target, err=e,
            )
            return PredicateResult(matched=False, resource=cached)

        if fresh is None:
            if self.deleted_ok:
                log.debug("{ref} no longer exists, accepted as {target}", ref=cached.ref, target=self.target)
                return PredicateResult(matched=True, resource=None)
            log.debug("{ref} not found while waiting for {target}", ref=cached.ref, target=self.target)
            return PredicateResult(matched=False, resource=cached)

        if fresh.status in self.invalid:
            log.warning(
                "{ref} reached invalid status {status} while waiting for {target}",
                ref=fresh.ref, status=fresh.status, target=self.target,
            )
            raise InvalidTerminalStatusError(
                fresh.ref, str(fresh.status), str(self.target), resource=fresh,
            )

        matched = fresh.status == self.target
        log.trace(
            "{ref}: {status} (want {target})",
            ref=fresh.ref, status=fresh.status, target=self.target,
        )
        return PredicateResult(matched=matched, resource=fresh)


def node_running(refresh: RefreshableResource[Node]) -> StatusPredicate[NodeStatus, Node]:
    return StatusPredicate(refresh, NodeStatus.RUNNING, {NodeStatus.ERROR, NodeStatus.TERMINATED})


def node_terminated(refresh: RefreshableResource[Node]) -> StatusPredicate[NodeStatus, Node]:
    return StatusPredicate.true_if_deleted(refresh, NodeStatus.TERMINATED, {NodeStatus.ERROR})


def node_suspended(refresh: RefreshableResource[Node]) -> StatusPredicate[NodeStatus, Node]:
    return StatusPredicate(refresh, NodeStatus.STOPPED, {NodeStatus.ERROR, NodeStatus.TERMINATED})


def image_available(refresh: RefreshableResource[Image]) -> StatusPredicate[ImageStatus, Image]:
    return StatusPredicate(refresh, ImageStatus.ACTIVE, {ImageStatus.ERROR})
