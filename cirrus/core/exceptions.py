"""Custom exception hierarchy for Cirrus.

All cirrus-specific exceptions inherit from CirrusError, enabling
users to catch all cirrus exceptions with a single except clause.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cirrus.api.model import Node, ResourceRef, ScopedName
    from cirrus.engine.reconciler import ReconcileReport


class CirrusError(Exception):
    """Base exception for all Cirrus errors."""


class ConfigurationError(CirrusError):
    """Raised for invalid configuration or missing required settings."""


class TransportError(CirrusError):
    """Raised when a provider call fails transiently (network, throttling, 5xx)."""

    def __init__(self, operation: str, message: str, *, code: str | None = None) -> None:
        self.operation = operation
        self.code = code
        detail = f" [{code}]" if code else ""
        super().__init__(f"{operation} failed{detail}: {message}")


class ResourceNotFoundError(CirrusError):
    """Raised when a remote resource does not exist."""

    def __init__(self, ref: ResourceRef | ScopedName) -> None:
        self.ref = ref
        super().__init__(f"Resource {ref} not found")


class ResourceInUseError(CirrusError):
    """Raised when a remote resource cannot be deleted because something still uses it."""

    def __init__(self, ref: ResourceRef | ScopedName, detail: str = "") -> None:
        self.ref = ref
        super().__init__(f"Resource {ref} is in use" + (f": {detail}" if detail else ""))


class CreationConflictError(CirrusError):
    """Raised by providers when a uniquely-named resource already exists."""

    def __init__(self, key: ScopedName, detail: str = "") -> None:
        self.key = key
        super().__init__(f"{key} already exists" + (f": {detail}" if detail else ""))


class CreationRaceUnresolvedError(CirrusError):
    """Raised when create/find kept conflicting without ever finding the resource."""

    def __init__(self, key: ScopedName, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Could not create or find {key} after {attempts} attempts: "
            "creation keeps conflicting but the existing resource is not visible"
        )


class ConvergenceError(CirrusError):
    """Base for failures of a resource to reach its target status."""

    def __init__(self, ref: ResourceRef, message: str) -> None:
        self.ref = ref
        super().__init__(message)


class InvalidTerminalStatusError(ConvergenceError):
    """Raised when a polled resource reaches a status it can never leave - do not retry."""

    def __init__(
        self,
        ref: ResourceRef,
        status: str,
        target: str | None = None,
        *,
        resource: Any = None,
    ) -> None:
        self.status = status
        self.target = target
        self.resource = resource
        wanted = f" while waiting for {target}" if target else ""
        super().__init__(
            ref, f"Resource {ref.id} in scope {ref.scope} reached invalid status {status}{wanted}"
        )


class ConvergenceTimeoutError(ConvergenceError):
    """Raised when a resource did not reach its target status within max_wait."""

    def __init__(self, ref: ResourceRef, status: str | None, max_wait: float) -> None:
        self.status = status
        self.max_wait = max_wait
        super().__init__(
            ref,
            f"Resource {ref.id} in scope {ref.scope} still {status} after {max_wait:.1f}s",
        )


class ConvergenceCancelledError(ConvergenceError):
    """Raised when polling was abandoned by the caller."""

    def __init__(self, ref: ResourceRef) -> None:
        super().__init__(ref, f"Polling of {ref} was cancelled")


class PartialReconciliationError(CirrusError):
    """Raised when some orphaned resources could not be deleted.

    The successful deletions already happened; the report lists both.
    """

    def __init__(self, report: ReconcileReport) -> None:
        self.report = report
        failed = [f"{r.kind}:{r.ref}" for r, _ in report.failed]
        failed += [f"scope:{scope}" for scope, _ in report.scope_errors]
        super().__init__(
            f"Orphan cleanup incomplete, {len(report.deleted)} deleted, "
            f"{len(failed)} failed: {', '.join(failed)}"
        )


class RunNodesError(CirrusError):
    """Raised when some nodes of a create batch did not come up."""

    def __init__(
        self,
        group: str,
        good: Sequence[Node],
        bad: Mapping[ResourceRef, Exception],
    ) -> None:
        self.group = group
        self.good = tuple(good)
        self.bad = dict(bad)
        super().__init__(
            f"Error creating nodes in group {group}: "
            f"{len(self.good)} running, {len(self.bad)} failed"
        )
