"""Provider-independent node lifecycle.

ComputeService is what callers use: it resolves the keypair and security
group of a group (once per scope, however many callers race for them),
launches nodes, waits for every node to come up, and on destroy waits for
termination before removing the group's now unused secondary resources.

Example:
    from cirrus import ComputeService, NodeTemplate
    from cirrus.providers.aws import AWS

    service = await ComputeService.create(AWS(regions=("us-east-1",)))
    nodes = await service.create_nodes_in_group(
        "web", 2, NodeTemplate(image_id="ami-123", size="t3.micro"), scope="us-east-1",
    )
    ...
    await service.destroy_nodes_in_group("web", scope="us-east-1")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import replace

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from cirrus.api.model import (
    Image,
    KeyPair,
    Node,
    NodeStatus,
    NodeTemplate,
    OrphanSet,
    ResourceRef,
    ScopedName,
    SecondaryKind,
    SecurityGroup,
    orphans_of,
)
from cirrus.api.provider import ComputeProvider, ProviderConfig
from cirrus.config import Settings
from cirrus.core.exceptions import (
    ConvergenceError,
    InvalidTerminalStatusError,
    PartialReconciliationError,
    ResourceInUseError,
    ResourceNotFoundError,
    RunNodesError,
)
from cirrus.engine.cache import KeyedResourceCache
from cirrus.engine.convergence import (
    CancelToken,
    Converged,
    ConvergenceLoop,
    Invalid,
    require,
)
from cirrus.engine.creator import ConflictRetryingCreator
from cirrus.engine.predicate import (
    StatusPredicate,
    image_available,
    node_running,
    node_suspended,
    node_terminated,
)
from cirrus.engine.reconciler import OrphanReconciler, ReconcileReport
from cirrus.naming import GroupNamingConvention, NamingConvention


class ComputeService:
    """Creates and destroys nodes through a ComputeProvider.

    Args:
        provider: Vendor adapter.
        settings: Timeouts, polling and creation policy.
        naming: Naming policy for secondary resources.
        creator: Create-or-find strategy, built from settings if omitted.
    """

    def __init__(
        self,
        provider: ComputeProvider,
        settings: Settings | None = None,
        *,
        naming: NamingConvention | None = None,
        creator: ConflictRetryingCreator | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings or Settings()
        self.naming = naming or GroupNamingConvention(
            prefix=self.settings.naming.prefix, delimiter=self.settings.naming.delimiter,
        )
        creation = self.settings.creation
        self.creator = creator or ConflictRetryingCreator(
            max_attempts=creation.max_attempts,
            base_delay=creation.base_delay,
            max_delay=creation.max_delay,
        )
        self.keypairs: KeyedResourceCache[KeyPair] = KeyedResourceCache("keypairs")
        self.security_groups: KeyedResourceCache[SecurityGroup] = KeyedResourceCache("security_groups")
        self.reconciler = OrphanReconciler(
            provider,
            self.naming,
            {SecondaryKind.KEYPAIR: self.keypairs, SecondaryKind.SECURITY_GROUP: self.security_groups},
            in_use_delay=self.settings.polling.interval,
        )
        self._log = logger.bind(component="compute", provider=provider.name)

    @classmethod
    async def create(
        cls, config: ProviderConfig[ComputeProvider], settings: Settings | None = None,
    ) -> ComputeService:
        return cls(await config.create_provider(), settings)

    def _loop(self, predicate: StatusPredicate, max_wait: float) -> ConvergenceLoop:
        polling = self.settings.polling
        return ConvergenceLoop(
            predicate,
            interval=polling.interval,
            max_interval=polling.max_interval,
            backoff=polling.backoff,
            max_wait=max_wait,
        )

    # -------------------------------------------------------------------------
    # Secondary resources
    # -------------------------------------------------------------------------

    async def ensure_keypair(self, scope: str, group: str) -> KeyPair:
        key = ScopedName(scope, self.naming.shared_name_for_group(group))
        return await self.keypairs.get_or_create(
            key,
            lambda: self.creator.create_or_find(
                key,
                lambda: self.provider.create_keypair(scope, key.name),
                lambda: self.provider.find_keypair(scope, key.name),
            ),
        )

    async def ensure_security_group(
        self, scope: str, group: str, ports: tuple[int, ...] = (22,),
    ) -> SecurityGroup:
        key = ScopedName(scope, self.naming.shared_name_for_group(group))
        return await self.security_groups.get_or_create(
            key,
            lambda: self.creator.create_or_find(
                key,
                lambda: self.provider.create_security_group(scope, key.name, ports),
                lambda: self.provider.find_security_group(scope, key.name),
            ),
        )

    async def _resolve_secondary(
        self, scope: str, group: str, template: NodeTemplate,
    ) -> tuple[str | None, tuple[str, ...]]:
        async def keypair() -> str | None:
            if template.keypair is not None:
                return template.keypair
            return (await self.ensure_keypair(scope, group)).name

        async def security_groups() -> tuple[str, ...]:
            if template.security_groups:
                return template.security_groups
            return ((await self.ensure_security_group(scope, group, template.ports)).name,)

        return await asyncio.gather(keypair(), security_groups())

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def get_node(self, ref: ResourceRef) -> Node | None:
        return await self.provider.get_node(ref)

    async def list_nodes(self, scope: str) -> Sequence[Node]:
        return await self.provider.list_nodes(scope)

    async def create_nodes_in_group(
        self,
        group: str,
        count: int,
        template: NodeTemplate,
        *,
        scope: str,
        cancel: CancelToken | None = None,
    ) -> list[Node]:
        """Launch count nodes in group and wait until all are running.

        Raises:
            RunNodesError: Some nodes errored, timed out or polling was
                cancelled. Nodes that did come up are in ``good``.
        """
        if count < 1:
            raise ValueError("count must be >= 1")
        self.naming.shared_name_for_group(group)  # rejects malformed group names

        keypair, security_groups = await self._resolve_secondary(scope, group, template)
        self._log.info(
            ">> creating {n} node(s) in group {group} ({scope}), keypair={kp}, security_groups={sg}",
            n=count, group=group, scope=scope, kp=keypair, sg=security_groups,
        )
        launched = await self.provider.create_nodes(
            scope, group, count, template, keypair, security_groups,
        )

        loop = self._loop(
            node_running(self.provider.get_node), self.settings.timeouts.node_running,
        )
        outcomes = await asyncio.gather(*(loop.run(node, cancel) for node in launched))

        good: list[Node] = []
        bad: dict[ResourceRef, Exception] = {}
        for node, outcome in zip(launched, outcomes, strict=True):
            try:
                running = require(outcome, max_wait=self.settings.timeouts.node_running)
            except ConvergenceError as e:
                bad[node.ref] = e
                continue
            assert running is not None
            good.append(running)

        if bad:
            for ref, err in bad.items():
                self._log.error("<< node {ref} did not start: {err}", ref=ref, err=err)
            raise RunNodesError(group, good, bad)

        self._log.info("<< {n} node(s) running in group {group}", n=len(good), group=group)
        return good

    async def _current(self, ref: ResourceRef) -> Node:
        node = await self.provider.get_node(ref)
        if node is None:
            raise ResourceNotFoundError(ref)
        return node

    async def suspend_node(self, ref: ResourceRef, cancel: CancelToken | None = None) -> Node:
        """Stop a node and wait until it reports stopped."""
        node = await self._current(ref)
        self._log.debug(">> suspending node {ref}", ref=ref)
        await self.provider.suspend_node(ref)
        max_wait = self.settings.timeouts.node_suspended
        loop = self._loop(node_suspended(self.provider.get_node), max_wait)
        # the pre-request observation may still say stopped from an earlier cycle
        stopped = require(await loop.run(replace(node, status=NodeStatus.STOPPING), cancel), max_wait=max_wait)
        assert stopped is not None
        self._log.debug("<< suspended node {ref}", ref=ref)
        return stopped

    async def resume_node(self, ref: ResourceRef, cancel: CancelToken | None = None) -> Node:
        """Start a suspended node and wait until it is running again."""
        node = await self._current(ref)
        self._log.debug(">> resuming node {ref}", ref=ref)
        await self.provider.resume_node(ref)
        max_wait = self.settings.timeouts.node_running
        loop = self._loop(node_running(self.provider.get_node), max_wait)
        running = require(await loop.run(replace(node, status=NodeStatus.PENDING), cancel), max_wait=max_wait)
        assert running is not None
        self._log.debug("<< resumed node {ref}", ref=ref)
        return running

    async def _destroy(self, ref: ResourceRef) -> Node | None:
        """Terminate one node and wait for it; None if it did not exist."""
        retrying = AsyncRetrying(
            stop=stop_after_delay(self.settings.timeouts.node_terminated),
            wait=wait_fixed(self.settings.polling.interval),
            retry=retry_if_exception_type(ResourceInUseError),
            reraise=True,
        )
        self._log.debug(">> destroying node {ref}", ref=ref)
        try:
            node = await retrying(self.provider.destroy_node, ref)
        except ResourceNotFoundError:
            node = None
        if node is None:
            self._log.debug("<< node {ref} did not exist", ref=ref)
            return None

        loop = self._loop(
            node_terminated(self.provider.get_node), self.settings.timeouts.node_terminated,
        )
        outcome = await loop.run(node)
        match outcome:
            case Converged(resource=None):
                destroyed = replace(node, status=NodeStatus.TERMINATED)
            case Converged(resource=resource):
                destroyed = resource
            case Invalid(resource=resource, status=status):
                raise InvalidTerminalStatusError(resource.ref, status, resource=resource)
            case _:
                self._log.warning("<< node {ref} not confirmed terminated: {o}", ref=ref, o=outcome)
                destroyed = outcome.resource
        self._log.debug("<< destroyed node {ref}", ref=ref)
        return destroyed

    async def destroy_node(self, ref: ResourceRef) -> Node | None:
        """Destroy a node, then clean up its group's orphaned secondary resources."""
        destroyed = await self._destroy(ref)
        if destroyed is not None:
            await self.reconcile(orphans_of([destroyed]))
        return destroyed

    async def destroy_nodes_matching(
        self, predicate: Callable[[Node], bool], *, scope: str,
    ) -> list[Node]:
        """Destroy every live node in scope matching predicate, in parallel.

        Secondary resources are reconciled once for the whole batch, even if
        some destroys failed; those failures are raised afterwards as an
        ExceptionGroup, together with any PartialReconciliationError.
        """
        targets = [n for n in await self.provider.list_nodes(scope) if n.alive and predicate(n)]
        self._log.debug(">> destroying {n} node(s) in {scope}", n=len(targets), scope=scope)

        results = await asyncio.gather(
            *(self._destroy(n.ref) for n in targets), return_exceptions=True,
        )
        for r in results:
            if isinstance(r, BaseException) and not isinstance(r, Exception):
                raise r
        destroyed = [r for r in results if isinstance(r, Node)]
        errors = [r for r in results if isinstance(r, Exception)]

        self._log.debug("<< destroyed {n} node(s)", n=len(destroyed))
        try:
            await self.reconcile(orphans_of(destroyed))
        except PartialReconciliationError as e:
            if not errors:
                raise
            errors.append(e)

        if errors:
            raise ExceptionGroup(f"Failed to destroy {len(errors)} node(s) in {scope}", errors)
        return destroyed

    async def destroy_nodes_in_group(self, group: str, *, scope: str) -> list[Node]:
        return await self.destroy_nodes_matching(lambda n: n.group == group, scope=scope)

    async def reconcile(self, destroyed: OrphanSet) -> ReconcileReport:
        return await self.reconciler.reconcile(destroyed)

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    async def wait_for_image(self, ref: ResourceRef, cancel: CancelToken | None = None) -> Image:
        """Wait until an image being saved becomes active."""
        image = await self.provider.get_image(ref)
        if image is None:
            raise ResourceNotFoundError(ref)
        loop = self._loop(
            image_available(self.provider.get_image), self.settings.timeouts.image_available,
        )
        result = require(
            await loop.run(image, cancel), max_wait=self.settings.timeouts.image_available,
        )
        assert result is not None
        return result
