"""Cirrus - convergent provisioning of cloud compute.

Example:

    from cirrus import ComputeService, NodeTemplate, load_settings
    from cirrus.providers import AWS

    service = await ComputeService.create(AWS(regions=("eu-west-1",)), load_settings())
    nodes = await service.create_nodes_in_group(
        "web", 3, NodeTemplate(image_id="ami-123", size="t3.micro"), scope="eu-west-1",
    )
    await service.destroy_nodes_in_group("web", scope="eu-west-1")
"""

# Model
from cirrus.api import (
    ComputeProvider,
    Image,
    ImageStatus,
    KeyPair,
    Node,
    NodeStatus,
    NodeTemplate,
    OrphanSet,
    ProviderConfig,
    RefreshableResource,
    ResourceRef,
    ScopedName,
    SecondaryKind,
    SecondaryResource,
    SecurityGroup,
    orphans_of,
)

# Service
from cirrus.compute import ComputeService

# Configuration
from cirrus.config import Settings, load_settings, resolve_provider

# Exceptions
from cirrus.core.exceptions import (
    CirrusError,
    ConfigurationError,
    ConvergenceCancelledError,
    ConvergenceError,
    ConvergenceTimeoutError,
    CreationConflictError,
    CreationRaceUnresolvedError,
    InvalidTerminalStatusError,
    PartialReconciliationError,
    ResourceInUseError,
    ResourceNotFoundError,
    RunNodesError,
    TransportError,
)

# Engine
from cirrus.engine import (
    CancelToken,
    Cancelled,
    ConflictRetryingCreator,
    Converged,
    ConvergenceLoop,
    Invalid,
    KeyedResourceCache,
    OrphanReconciler,
    ReconcileReport,
    StatusPredicate,
    TimedOut,
    await_status,
    require,
)

# Logging
from cirrus.logging import LogConfig, setup_logging, teardown_logging

# Naming
from cirrus.naming import GroupNamingConvention, NamingConvention

__all__ = [
    # Model
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
    "SecurityGroup",
    "orphans_of",
    # Service
    "ComputeService",
    # Configuration
    "Settings",
    "load_settings",
    "resolve_provider",
    # Exceptions
    "CirrusError",
    "ConfigurationError",
    "ConvergenceCancelledError",
    "ConvergenceError",
    "ConvergenceTimeoutError",
    "CreationConflictError",
    "CreationRaceUnresolvedError",
    "InvalidTerminalStatusError",
    "PartialReconciliationError",
    "ResourceInUseError",
    "ResourceNotFoundError",
    "RunNodesError",
    "TransportError",
    # Engine
    "CancelToken",
    "Cancelled",
    "ConflictRetryingCreator",
    "Converged",
    "ConvergenceLoop",
    "Invalid",
    "KeyedResourceCache",
    "OrphanReconciler",
    "ReconcileReport",
    "StatusPredicate",
    "TimedOut",
    "await_status",
    "require",
    # Logging
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    # Naming
    "GroupNamingConvention",
    "NamingConvention",
]
