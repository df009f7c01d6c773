from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


@dataclass(frozen=True, slots=True)
class ResourceRef:
    """Identity of a remote resource: provider partition plus opaque id."""

    scope: str
    id: str

    def __str__(self) -> str:
        return f"{self.scope}/{self.id}"

    @classmethod
    def parse(cls, handle: str) -> ResourceRef:
        scope, sep, rid = handle.partition("/")
        if not sep or not scope or not rid:
            raise ValueError(f"Expected 'scope/id', got {handle!r}")
        return cls(scope=scope, id=rid)


@dataclass(frozen=True, slots=True)
class ScopedName:
    """Cache key for secondary resources, whose names are unique per scope only."""

    scope: str
    name: str

    def __str__(self) -> str:
        return f"{self.scope}/{self.name}"


def _parse_status[S: StrEnum](cls: type[S], raw: str, aliases: Mapping[str, S] | None) -> S:
    key = raw.lower()
    if aliases and key in aliases:
        return aliases[key]
    try:
        return cls(key)
    except ValueError:
        return cls["UNRECOGNIZED"]


class NodeStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    ERROR = "error"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: str, aliases: Mapping[str, NodeStatus] | None = None) -> NodeStatus:
        """Status named by a provider state; aliases map provider-specific names."""
        return _parse_status(cls, raw, aliases)


class ImageStatus(StrEnum):
    QUEUED = "queued"
    SAVING = "saving"
    ACTIVE = "active"
    ERROR = "error"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: str, aliases: Mapping[str, ImageStatus] | None = None) -> ImageStatus:
        return _parse_status(cls, raw, aliases)


@dataclass(frozen=True, slots=True)
class StatusfulResource[S: StrEnum]:
    """One observation of a polled resource.

    Observations are immutable; a refresh produces a new instance which
    replaces the caller's view.
    """

    ref: ResourceRef
    status: S
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class Node(StatusfulResource[NodeStatus]):
    group: str | None = None
    name: str | None = None
    keypair: str | None = None
    security_groups: tuple[str, ...] = ()
    public_ip: str | None = None

    @property
    def alive(self) -> bool:
        return self.status is not NodeStatus.TERMINATED


@dataclass(frozen=True, slots=True)
class Image(StatusfulResource[ImageStatus]):
    name: str | None = None


class SecondaryKind(StrEnum):
    KEYPAIR = "keypair"
    SECURITY_GROUP = "security_group"


@dataclass(frozen=True, slots=True)
class KeyPair:
    scope: str
    name: str
    fingerprint: str = ""
    private_key: str | None = field(default=None, repr=False)
    id: str | None = None

    @property
    def key(self) -> ScopedName:
        return ScopedName(self.scope, self.name)


@dataclass(frozen=True, slots=True)
class SecurityGroup:
    scope: str
    name: str
    id: str | None = None
    ports: tuple[int, ...] = ()

    @property
    def key(self) -> ScopedName:
        return ScopedName(self.scope, self.name)


@dataclass(frozen=True, slots=True)
class SecondaryResource:
    """A keypair or security group as returned by a provider listing."""

    kind: SecondaryKind
    ref: ResourceRef
    name: str
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> ScopedName:
        return ScopedName(self.ref.scope, self.name)


@dataclass(frozen=True, slots=True)
class NodeTemplate:
    """Provider-independent description of the nodes to create.

    When keypair or security_groups are given they are used as-is and
    nothing is created for them.
    """

    image_id: str
    size: str
    ports: tuple[int, ...] = (22,)
    keypair: str | None = None
    security_groups: tuple[str, ...] = ()
    user_data: str | None = None


type OrphanSet = Mapping[str, frozenset[str]]


def orphans_of(nodes: Iterable[Node]) -> dict[str, frozenset[str]]:
    """Group destroyed nodes by scope, keeping only nodes that belong to a group."""
    groups: dict[str, set[str]] = {}
    for node in nodes:
        if node.group:
            groups.setdefault(node.ref.scope, set()).add(node.group)
    return {scope: frozenset(names) for scope, names in groups.items()}
