"""Provider-independent model and provider interfaces."""

from .model import Image as Image
from .model import ImageStatus as ImageStatus
from .model import KeyPair as KeyPair
from .model import Node as Node
from .model import NodeStatus as NodeStatus
from .model import NodeTemplate as NodeTemplate
from .model import OrphanSet as OrphanSet
from .model import ResourceRef as ResourceRef
from .model import ScopedName as ScopedName
from .model import SecondaryKind as SecondaryKind
from .model import SecondaryResource as SecondaryResource
from .model import SecurityGroup as SecurityGroup
from .model import StatusfulResource as StatusfulResource
from .model import orphans_of as orphans_of
from .provider import ComputeProvider as ComputeProvider
from .provider import ProviderConfig as ProviderConfig
from .provider import RefreshableResource as RefreshableResource
from .provider import SecondaryResourceApi as SecondaryResourceApi

__all__ = [
    "ComputeProvider",
    "Image",
    "ImageStatus",
    "KeyPair",
    "Node",
    "NodeStatus",
    "NodeTemplate",
    "OrphanSet",
    "ProviderConfig",
    "RefreshableResource",
    "ResourceRef",
    "ScopedName",
    "SecondaryKind",
    "SecondaryResource",
    "SecondaryResourceApi",
    "SecurityGroup",
    "StatusfulResource",
    "orphans_of",
]
