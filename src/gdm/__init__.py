"""gdm: reconcile release branches and open the release pull request."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("gdm")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .compare import BranchComparator, Divergence  # noqa: F401
from .git_provider import GitProvider, GitPythonProvider, Reference, RepositoryError  # noqa: F401
from .reconcile import (  # noqa: F401
    Action,
    ExistenceState,
    ReconcileOutcome,
    ReconciliationEngine,
    plan_transition,
)
from .refs import ReferenceResolver, RefNotFound  # noqa: F401
from .sync import RemoteSynchronizer, SyncError, SyncResult  # noqa: F401

__all__ = [
    "Action",
    "BranchComparator",
    "Divergence",
    "ExistenceState",
    "GitProvider",
    "GitPythonProvider",
    "ReconcileOutcome",
    "ReconciliationEngine",
    "Reference",
    "ReferenceResolver",
    "RefNotFound",
    "RemoteSynchronizer",
    "RepositoryError",
    "SyncError",
    "SyncResult",
    "plan_transition",
    "__version__",
]
