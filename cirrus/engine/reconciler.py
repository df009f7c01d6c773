"""Cleanup of keypairs and security groups left behind by destroyed groups.

After a destroy batch, every secondary resource whose name places it in one
of the destroyed groups is deleted and evicted from the cache, unless a
live node still references it. Security groups go first: providers refuse
to delete one that is still attached, which is the cheaper signal that the
group is not really gone, and keypair deletion never fails that way.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from cirrus.api.model import OrphanSet, SecondaryKind, SecondaryResource
from cirrus.api.provider import SecondaryResourceApi
from cirrus.core.exceptions import (
    PartialReconciliationError,
    ResourceInUseError,
    ResourceNotFoundError,
)
from cirrus.engine.cache import KeyedResourceCache
from cirrus.naming import NamingConvention

log = logger.bind(component="reconciler")

_DELETE_ORDER = {SecondaryKind.SECURITY_GROUP: 0, SecondaryKind.KEYPAIR: 1}


@dataclass(frozen=True, slots=True)
class ReconcileReport:
    deleted: tuple[SecondaryResource, ...] = ()
    in_use: tuple[SecondaryResource, ...] = ()
    failed: tuple[tuple[SecondaryResource, Exception], ...] = ()
    scope_errors: tuple[tuple[str, Exception], ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed and not self.scope_errors

    def merge(self, other: ReconcileReport) -> ReconcileReport:
        return ReconcileReport(
            deleted=self.deleted + other.deleted,
            in_use=self.in_use + other.in_use,
            failed=self.failed + other.failed,
            scope_errors=self.scope_errors + other.scope_errors,
        )


class OrphanReconciler:
    """Deletes secondary resources of destroyed groups and keeps caches consistent.

    Args:
        api: Lists and deletes secondary resources.
        naming: Decides which group a resource name belongs to.
        caches: Cache per resource kind; a single cache serves all kinds.
        check_references: Skip resources still referenced by live nodes.
        in_use_attempts: Deletion attempts while the provider reports in-use.
        in_use_delay: Seconds between those attempts.
    """

    def __init__(
        self,
        api: SecondaryResourceApi,
        naming: NamingConvention,
        caches: Mapping[SecondaryKind, KeyedResourceCache] | KeyedResourceCache,
        *,
        check_references: bool = True,
        in_use_attempts: int = 3,
        in_use_delay: float = 1.0,
    ) -> None:
        self.api = api
        self.naming = naming
        if isinstance(caches, KeyedResourceCache):
            caches = {kind: caches for kind in SecondaryKind}
        self.caches = dict(caches)
        self.check_references = check_references
        self.in_use_attempts = max(1, in_use_attempts)
        self.in_use_delay = in_use_delay

    def matching(
        self, resources: Iterable[SecondaryResource], groups: frozenset[str],
    ) -> list[SecondaryResource]:
        """Resources owned by one of groups, in deletion order."""
        owned = [r for r in resources if self.naming.group_of(r.name) in groups]
        return sorted(owned, key=lambda r: (_DELETE_ORDER.get(r.kind, 99), r.name))

    async def reconcile(self, destroyed: OrphanSet) -> ReconcileReport:
        scopes = {scope: frozenset(groups) for scope, groups in destroyed.items() if groups}
        if not scopes:
            return ReconcileReport()

        log.debug("Reconciling orphans of {groups}", groups=scopes)
        reports = await asyncio.gather(
            *(self._reconcile_scope(scope, groups) for scope, groups in scopes.items())
        )
        report = ReconcileReport()
        for r in reports:
            report = report.merge(r)

        log.info(
            "Reconciled {n} scope(s): {d} deleted, {u} in use, {f} failed",
            n=len(scopes), d=len(report.deleted), u=len(report.in_use),
            f=len(report.failed) + len(report.scope_errors),
        )
        if not report.ok:
            raise PartialReconciliationError(report)
        return report

    async def _reconcile_scope(self, scope: str, groups: frozenset[str]) -> ReconcileReport:
        try:
            listed = await self.api.list_secondary(scope)
            referenced = (
                await self.api.referenced_names(scope) if self.check_references else frozenset()
            )
        except Exception as e:
            log.error("Could not list secondary resources in {scope}: {err}", scope=scope, err=e)
            return ReconcileReport(scope_errors=((scope, e),))

        deleted: list[SecondaryResource] = []
        in_use: list[SecondaryResource] = []
        failed: list[tuple[SecondaryResource, Exception]] = []

        for resource in self.matching(listed, groups):
            if resource.name in referenced:
                log.debug("{kind} {name} still referenced, keeping", kind=resource.kind, name=resource.name)
                in_use.append(resource)
                continue
            try:
                await self._delete(resource)
            except Exception as e:
                log.error(
                    "Failed to delete {kind} {ref}: {err}", kind=resource.kind, ref=resource.ref, err=e,
                )
                failed.append((resource, e))
                continue
            self._evict(resource)
            deleted.append(resource)

        return ReconcileReport(tuple(deleted), tuple(in_use), tuple(failed))

    async def _delete(self, resource: SecondaryResource) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.in_use_attempts),
            wait=wait_fixed(self.in_use_delay),
            retry=retry_if_exception_type(ResourceInUseError),
            reraise=True,
        )
        log.debug(">> deleting {kind} {ref}", kind=resource.kind, ref=resource.ref)
        try:
            await retrying(self.api.delete_secondary, resource)
        except ResourceNotFoundError:
            log.debug("<< {kind} {ref} was already gone", kind=resource.kind, ref=resource.ref)
            return
        log.debug("<< deleted {kind} {ref}", kind=resource.kind, ref=resource.ref)

    def _evict(self, resource: SecondaryResource) -> None:
        cache = self.caches.get(resource.kind)
        if cache is not None:
            cache.invalidate(resource.key)

