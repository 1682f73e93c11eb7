"""multibranch: keep branch projects in step with prioritized repository sources."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("multibranch-sync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .mangler import mangle  # noqa: F401
from .model import BranchSource, DeadBranch, Head, HeadKind, LiveBranch, Revision  # noqa: F401
from .container import MultiBranchContainer  # noqa: F401
from .events import EventType, HeadEvent, SourceEvent  # noqa: F401
from .organization import OrganizationFolder  # noqa: F401
from .service import ReconciliationService  # noqa: F401

__all__ = [
    "mangle",
    "BranchSource",
    "DeadBranch",
    "Head",
    "HeadKind",
    "LiveBranch",
    "Revision",
    "MultiBranchContainer",
    "EventType",
    "HeadEvent",
    "SourceEvent",
    "OrganizationFolder",
    "ReconciliationService",
    "__version__",
]
