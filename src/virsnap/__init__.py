"""virsnap - Snapshot and backup automation for libvirt virtual machines."""

__version__ = "0.1.0"
__description__ = "libvirt snapshot and backup utility"

# Import main classes for easy access
from .models import (
    PowerState,
    CreateOptions,
    CleanOptions,
    ExportOptions,
    OperationResult,
    VMOutcome,
    PruneResult,
)
from .exceptions import (
    VirsnapError,
    ConfigurationError,
    HypervisorError,
    ValidationError,
    TransitionError,
    SnapshotCreateError,
    SnapshotDeleteError,
    ExportError,
)
from .hypervisor import Hypervisor, VM, Snapshot
from .transition import TransitionEngine
from .operations import SnapshotOperations

__all__ = [
    "__version__",
    "__description__",
    "PowerState",
    "CreateOptions",
    "CleanOptions",
    "ExportOptions",
    "OperationResult",
    "VMOutcome",
    "PruneResult",
    "VirsnapError",
    "ConfigurationError",
    "HypervisorError",
    "ValidationError",
    "TransitionError",
    "SnapshotCreateError",
    "SnapshotDeleteError",
    "ExportError",
    "Hypervisor",
    "VM",
    "Snapshot",
    "TransitionEngine",
    "SnapshotOperations",
]
