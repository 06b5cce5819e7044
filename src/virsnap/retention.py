"""
Snapshot retention: collision-free creation and keep-count pruning.
"""

import random
import xml.etree.ElementTree as ET
from typing import Callable, Optional, Sequence

from .exceptions import HypervisorError, SnapshotCreateError, SnapshotDeleteError, ValidationError
from .hypervisor import Snapshot, VM, free_all
from .logging import StructuredLogger, logger
from .models import PruneResult
from .selection import exact_pattern, select_snapshots

DEFAULT_PREFIX = "virsnap_"

_ADJECTIVES = [
    "admiring", "agitated", "amazing", "awesome", "blissful", "bold", "brave",
    "clever", "compassionate", "confident", "dazzling", "eager", "ecstatic",
    "elegant", "epic", "festive", "focused", "friendly", "gallant", "gifted",
    "happy", "hopeful", "jolly", "keen", "laughing", "loving", "modest",
    "nifty", "nostalgic", "peaceful", "quirky", "relaxed", "serene", "sharp",
    "stoic", "tender", "trusting", "upbeat", "vibrant", "wizardly", "zealous",
]

_NAMES = [
    "albattani", "babbage", "bardeen", "bell", "boyd", "carson", "curie",
    "darwin", "dijkstra", "einstein", "euler", "fermat", "feynman", "galileo",
    "gauss", "hamilton", "hopper", "hypatia", "kepler", "knuth", "lamport",
    "lovelace", "mccarthy", "meitner", "newton", "noether", "pascal",
    "ritchie", "shannon", "thompson", "torvalds", "turing", "wozniak", "yalow",
]


def generate_snapshot_name(
    prefix: str = DEFAULT_PREFIX, rng: Optional[random.Random] = None
) -> str:
    """Return ``prefix`` followed by a random human-friendly slug."""
    rng = rng or random
    return f"{prefix}{rng.choice(_ADJECTIVES)}_{rng.choice(_NAMES)}"


def build_snapshot_descriptor(name: str, description: str) -> str:
    root = ET.Element("domainsnapshot")
    ET.SubElement(root, "name").text = name
    ET.SubElement(root, "description").text = description
    return ET.tostring(root, encoding="unicode")


def create_snapshot(
    vm: VM,
    prefix: str = DEFAULT_PREFIX,
    description: str = "snapshot created by virsnap",
    log: Optional[StructuredLogger] = None,
    name_factory: Optional[Callable[[], str]] = None,
) -> Snapshot:
    """
    Create a snapshot of ``vm`` under a generated name not yet used by the VM.

    Candidate names are regenerated until one does not exist.

    Raises:
        SnapshotCreateError: If the hypervisor rejects the snapshot
    """
    log = log or logger
    factory = name_factory or (lambda: generate_snapshot_name(prefix))

    while True:
        candidate = factory()
        existing = select_snapshots(vm, [exact_pattern(candidate)], log)
        free_all(existing)
        if not existing:
            break
        log.debug(f"Snapshot name {candidate} already in use, generating another one",
                  vm_name=vm.name, snapshot=candidate)

    try:
        return vm.create_snapshot(build_snapshot_descriptor(candidate, description))
    except HypervisorError as e:
        raise SnapshotCreateError(vm.name, candidate, e.message)


def prune_snapshots(
    vm_name: str,
    snapshots: Sequence[Snapshot],
    keep: int,
    confirm: Optional[Callable[[Snapshot], bool]] = None,
    log: Optional[StructuredLogger] = None,
) -> PruneResult:
    """
    Delete the oldest snapshots so that at most ``keep`` remain.

    Args:
        vm_name: Name of the VM owning the snapshots
        snapshots: Snapshots sorted oldest first
        keep: Number of newest snapshots to keep
        confirm: Optional callback; returning False skips a deletion

    Returns:
        PruneResult: Names of deleted, declined and failed snapshots
    """
    if keep < 0:
        raise ValidationError(f"keep must be >= 0, got {keep}", "keep")

    log = log or logger
    result = PruneResult()
    excess = max(0, len(snapshots) - keep)

    for snapshot in snapshots[:excess]:
        if confirm is not None and not confirm(snapshot):
            log.info(f"Keeping snapshot {snapshot.name} of VM {vm_name}",
                     vm_name=vm_name, snapshot=snapshot.name)
            result.declined.append(snapshot.name)
            continue

        log.info(f"Removing snapshot {snapshot.name} of VM {vm_name}",
                 vm_name=vm_name, snapshot=snapshot.name)
        try:
            snapshot.delete()
        except HypervisorError as e:
            error = SnapshotDeleteError(vm_name, snapshot.name, e.message)
            log.error(error.message, vm_name=vm_name, snapshot=snapshot.name)
            result.failed.append(snapshot.name)
            continue
        result.deleted.append(snapshot.name)

    return result
