"""
VM and snapshot selection by name pattern.

A name is selected if it matches at least one pattern of the pattern set
(search semantics, the pattern may match anywhere in the name). Handles that
are not selected are released right away.
"""

import re
from typing import List, Optional, Pattern, Sequence

from .exceptions import DescriptorParseError, InvalidPatternError, NoPatternSpecifiedError
from .hypervisor import Hypervisor, Snapshot, VM
from .logging import StructuredLogger, logger

MATCH_ALL = ".*"


def compile_patterns(patterns: Sequence[str]) -> List[Pattern[str]]:
    """
    Compile a pattern set.

    Raises:
        InvalidPatternError: If a pattern is not a valid regular expression
        NoPatternSpecifiedError: If the pattern set is empty
    """
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise InvalidPatternError(pattern, str(e))

    if not compiled:
        raise NoPatternSpecifiedError()

    return compiled


def matches_any(name: str, exprs: Sequence[Pattern[str]]) -> bool:
    return any(expr.search(name) is not None for expr in exprs)


def exact_pattern(name: str) -> str:
    """A pattern that matches exactly ``name``."""
    return f"^{re.escape(name)}$"


def select_vms(
    hypervisor: Hypervisor,
    patterns: Sequence[str],
    log: Optional[StructuredLogger] = None,
) -> List[VM]:
    """
    Return the VMs whose name matches at least one pattern, ordered by name.

    The caller owns the returned handles and must free them.
    """
    log = log or logger
    exprs = compile_patterns(patterns)

    matched = []
    for vm in hypervisor.list_domains():
        try:
            name = vm.describe()
        except DescriptorParseError as e:
            log.warning(f"{e.message}; skipping this VM")
            vm.free()
            continue

        if matches_any(name, exprs):
            matched.append(vm)
        else:
            vm.free()

    matched.sort(key=lambda vm: vm.name)
    log.debug(f"{len(matched)} VM(s) matched {list(patterns)}", matched=len(matched))
    return matched


def select_snapshots(
    vm: VM,
    patterns: Sequence[str],
    log: Optional[StructuredLogger] = None,
) -> List[Snapshot]:
    """
    Return the snapshots of ``vm`` whose name matches at least one pattern.

    The result is sorted by creation time, oldest first; snapshots with equal
    creation times keep their enumeration order. The caller owns the returned
    handles and must free them.
    """
    log = log or logger
    exprs = compile_patterns(patterns)

    matched = []
    for snapshot in vm.list_snapshots(log):
        if matches_any(snapshot.name, exprs):
            matched.append(snapshot)
        else:
            snapshot.free()

    # list.sort is stable
    matched.sort(key=lambda snapshot: snapshot.creation_time)
    return matched
