"""Convergence engine: status polling, single-flight creation, orphan cleanup."""

from .cache import KeyedResourceCache as KeyedResourceCache
from .convergence import CancelToken as CancelToken
from .convergence import Cancelled as Cancelled
from .convergence import Converged as Converged
from .convergence import ConvergenceLoop as ConvergenceLoop
from .convergence import Invalid as Invalid
from .convergence import Outcome as Outcome
from .convergence import TimedOut as TimedOut
from .convergence import await_status as await_status
from .convergence import require as require
from .creator import ConflictRetryingCreator as ConflictRetryingCreator
from .predicate import PredicateResult as PredicateResult
from .predicate import StatusPredicate as StatusPredicate
from .reconciler import OrphanReconciler as OrphanReconciler
from .reconciler import ReconcileReport as ReconcileReport

__all__ = [
    "CancelToken",
    "Cancelled",
    "ConflictRetryingCreator",
    "Converged",
    "ConvergenceLoop",
    "Invalid",
    "KeyedResourceCache",
    "OrphanReconciler",
    "Outcome",
    "PredicateResult",
    "ReconcileReport",
    "StatusPredicate",
    "TimedOut",
    "await_status",
    "require",
]
