"""
Data models for virsnap operations.

This module defines the data structures used throughout virsnap.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional


class PowerState(IntEnum):
    """Virtual machine power states (values mirror libvirt's virDomainState)."""

    NOSTATE = 0
    RUNNING = 1
    BLOCKED = 2
    PAUSED = 3
    SHUTDOWN = 4
    SHUTOFF = 5
    CRASHED = 6
    PMSUSPENDED = 7

    @classmethod
    def from_code(cls, code: int) -> "PowerState":
        """Map a raw hypervisor state code, unknown codes become NOSTATE."""
        try:
            return cls(code)
        except ValueError:
            return cls.NOSTATE

    @property
    def label(self) -> str:
        return _LABELS[self]

    def __str__(self) -> str:
        return self.label


_LABELS = {
    PowerState.NOSTATE: "nostate",
    PowerState.RUNNING: "running",
    PowerState.BLOCKED: "blocked",
    PowerState.PAUSED: "paused",
    PowerState.SHUTDOWN: "shutting-down",
    PowerState.SHUTOFF: "shutoff",
    PowerState.CRASHED: "crashed",
    PowerState.PMSUSPENDED: "pmsuspended",
}

# States a caller may request
TARGET_STATES = frozenset(
    {PowerState.RUNNING, PowerState.PAUSED, PowerState.PMSUSPENDED, PowerState.SHUTOFF}
)


@dataclass
class DiskInfo:
    """Disk information."""

    path: str
    target: str
    format: str = "raw"


@dataclass
class CreateOptions:
    """Options for snapshot creation."""

    shutdown: bool = False
    force: bool = False
    timeout: Optional[int] = None  # minutes, falls back to configuration


@dataclass
class CleanOptions:
    """Options for retention pruning."""

    keep: int = 10
    assume_yes: bool = False
    snapshot_patterns: Optional[List[str]] = None


@dataclass
class ExportOptions:
    """Options for disk export."""

    output_dir: str = "."
    snapshot: bool = True
    timeout: Optional[int] = None


@dataclass
class PruneResult:
    """Result of pruning the snapshots of one VM."""

    deleted: List[str] = field(default_factory=list)
    declined: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class VMOutcome:
    """Outcome of one operation on one VM."""

    vm_name: str
    success: bool = True
    snapshot_name: Optional[str] = None
    previous_state: Optional[PowerState] = None
    restored: Optional[bool] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.success = False
        self.errors.append(message)


@dataclass
class OperationResult:
    """Aggregate result of an operation over all selected VMs."""

    operation: str
    outcomes: List[VMOutcome] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors) or any(not outcome.success for outcome in self.outcomes)

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class SnapshotRow:
    """A snapshot as shown by the list command."""

    name: str
    creation_time: int
    state: str
    description: str = ""


@dataclass
class VMListing:
    """A VM with its snapshots as shown by the list command."""

    name: str
    state: PowerState
    snapshots: List[SnapshotRow] = field(default_factory=list)
