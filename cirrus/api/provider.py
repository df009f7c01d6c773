from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol, runtime_checkable

from cirrus.api.model import (
    Image,
    KeyPair,
    Node,
    NodeTemplate,
    ResourceRef,
    SecondaryResource,
    SecurityGroup,
)

type RefreshableResource[R] = Callable[[ResourceRef], Awaitable[R | None]]
"""Fetch the latest observation of a resource, or None when it no longer exists.

Raises TransportError on transient failures.
"""


@runtime_checkable
class ProviderConfig[P](Protocol):
    @property
    def type(self) -> str: ...

    async def create_provider(self) -> P: ...


@runtime_checkable
class SecondaryResourceApi(Protocol):
    """The slice of a provider the orphan reconciler needs."""

    async def list_secondary(self, scope: str) -> Sequence[SecondaryResource]:
        """All keypairs and security groups visible in scope."""
        ...

    async def delete_secondary(self, resource: SecondaryResource) -> None:
        """Delete one keypair or security group.

        Raises ResourceNotFoundError if it is already gone and
        ResourceInUseError if a node still depends on it.
        """
        ...

    async def referenced_names(self, scope: str) -> frozenset[str]:
        """Names of keypairs and security groups used by live nodes in scope."""
        ...


@runtime_checkable
class ComputeProvider(SecondaryResourceApi, Protocol):
    """Stateless interface for cloud provider operations.

    Implementations hold only immutable config (credentials, regions).
    Convergence, caching and cleanup live in the engine that calls
    these methods.
    """

    @property
    def name(self) -> str: ...

    async def get_node(self, ref: ResourceRef) -> Node | None:
        """Current observation of a node, None if it no longer exists."""
        ...

    async def get_image(self, ref: ResourceRef) -> Image | None:
        """Current observation of an image, None if it no longer exists."""
        ...

    async def list_nodes(self, scope: str) -> Sequence[Node]:
        ...

    async def create_nodes(
        self,
        scope: str,
        group: str,
        count: int,
        template: NodeTemplate,
        keypair: str | None,
        security_groups: tuple[str, ...],
    ) -> Sequence[Node]:
        """Launch nodes. They are returned as first observed, usually pending."""
        ...

    async def destroy_node(self, ref: ResourceRef) -> Node | None:
        """Request termination. Returns the node as last seen, None if unknown."""
        ...

    async def suspend_node(self, ref: ResourceRef) -> None:
        """Request a stop. Raises ResourceNotFoundError if the node is unknown."""
        ...

    async def resume_node(self, ref: ResourceRef) -> None:
        """Request a start of a stopped node."""
        ...

    async def create_keypair(self, scope: str, name: str) -> KeyPair:
        """Raises CreationConflictError when the name is taken."""
        ...

    async def find_keypair(self, scope: str, name: str) -> KeyPair | None:
        ...

    async def create_security_group(
        self, scope: str, name: str, ports: tuple[int, ...],
    ) -> SecurityGroup:
        """Raises CreationConflictError when the name is taken."""
        ...

    async def find_security_group(self, scope: str, name: str) -> SecurityGroup | None:
        ...
