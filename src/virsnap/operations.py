"""
Per-VM orchestration of the create, clean, export and list operations.

Every operation selects the VMs first, then processes them one after the
other. A failure on one VM is recorded in its outcome and never stops the
processing of the next VM.
"""

import re
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Sequence

from .config import AppConfig
from .exceptions import ValidationError, VirsnapError
from .exporter import RsyncSyncer, ensure_directory, export_vm
from .hypervisor import Hypervisor, Snapshot, VM, free_all
from .logging import StructuredLogger, logger
from .models import (
    CleanOptions,
    CreateOptions,
    ExportOptions,
    OperationResult,
    PowerState,
    SnapshotRow,
    TARGET_STATES,
    VMListing,
    VMOutcome,
)
from .retention import create_snapshot, prune_snapshots
from .selection import MATCH_ALL, compile_patterns, select_snapshots, select_vms
from .transition import TransitionEngine


def restore_target(previous: PowerState) -> PowerState:
    """The state to restore a VM to after it was found in ``previous``."""
    if previous in TARGET_STATES:
        return previous
    # crashed and shutting-down VMs end up shut off
    return PowerState.SHUTOFF


class SnapshotOperations:
    """Runs virsnap operations over the VMs selected by a pattern set."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        config: Optional[AppConfig] = None,
        engine: Optional[TransitionEngine] = None,
        syncer: Optional[RsyncSyncer] = None,
        log: Optional[StructuredLogger] = None,
    ) -> None:
        self.hypervisor = hypervisor
        self.config = config or AppConfig()
        self.logger = log or logger
        self.engine = engine or TransitionEngine(
            poll_interval=self.config.poll_interval,
            shutdown_rounds=self.config.shutdown_rounds,
            log=self.logger,
        )
        self.syncer = syncer or RsyncSyncer(
            rsync_path=self.config.rsync_path,
            bandwidth_limit=self.config.bandwidth_limit,
            log=self.logger,
        )

    @contextmanager
    def restored_state(
        self,
        vm: VM,
        previous: PowerState,
        outcome: VMOutcome,
        force: bool,
        timeout: float,
    ) -> Iterator[None]:
        """Run the enclosed block, then always try to bring ``vm`` back to ``previous``."""
        try:
            yield
        finally:
            self._restore(vm, previous, outcome, force, timeout)

    def _restore(
        self,
        vm: VM,
        previous: PowerState,
        outcome: VMOutcome,
        force: bool,
        timeout: float,
    ) -> None:
        target = restore_target(previous)
        self.logger.debug(
            f"Restoring previous state {target.label} of VM {vm.name}",
            vm_name=vm.name,
            state=target.label,
        )
        try:
            self.engine.transition(vm, target, force, timeout)
        except VirsnapError as e:
            outcome.restored = False
            outcome.fail(f"unable to restore state '{target.label}': {e.message}")
            self.logger.critical(
                f"Unable to restore state '{target.label}' of VM '{vm.name}': {e.message}",
                vm_name=vm.name,
            )
            try:
                current = self.engine.query_state(vm)
            except VirsnapError as err:
                self.logger.error(
                    f"Unable to retrieve current state of VM '{vm.name}': {err.message}",
                    vm_name=vm.name,
                )
                return
            self.logger.warning(
                f"State of VM '{vm.name}' is now '{current.label}'",
                vm_name=vm.name,
                state=current.label,
            )
            return
        outcome.restored = True

    def _snapshot(self, vm: VM, outcome: VMOutcome) -> None:
        self.logger.debug(f"Beginning creation of snapshot for VM {vm.name}", vm_name=vm.name)
        try:
            snapshot = create_snapshot(
                vm,
                prefix=self.config.snapshot_prefix,
                description=self.config.snapshot_description,
                log=self.logger,
            )
        except VirsnapError as e:
            outcome.fail(e.message)
            self.logger.error(
                f"Could not create snapshot for VM {vm.name}: {e.message}", vm_name=vm.name
            )
            return

        with snapshot:
            outcome.snapshot_name = snapshot.name
            self.logger.info(
                f"Created snapshot {snapshot.name} for VM {vm.name}",
                vm_name=vm.name,
                snapshot=snapshot.name,
            )

    def _timeout(self, timeout: Optional[int]) -> int:
        return timeout if timeout is not None else self.config.default_timeout

    def _finish(self, result: OperationResult) -> OperationResult:
        if result.failed:
            self.logger.error(
                f"There were errors during the {result.operation} operation",
                operation=result.operation,
            )
        else:
            self.logger.info(
                f"Finished {result.operation} of {len(result.outcomes)} VM(s)",
                operation=result.operation,
            )
        return result

    def create(self, patterns: Sequence[str], options: CreateOptions) -> OperationResult:
        """
        Create a snapshot of every matching VM.

        With ``options.shutdown`` each VM is shut off first and brought back to
        its previous state afterwards, whether or not the snapshot succeeded.
        """
        if options.force and not options.shutdown:
            raise ValidationError(
                "the force flag can only be specified together with shutdown", "flags"
            )
        timeout = self._timeout(options.timeout)
        result = OperationResult("create")

        vms = select_vms(self.hypervisor, patterns, self.logger)
        if not vms:
            self.logger.info("There were no virtual machines matching the given pattern(s)")

        try:
            for vm in vms:
                outcome = VMOutcome(vm.name)
                result.outcomes.append(outcome)

                if not options.shutdown:
                    self._snapshot(vm, outcome)
                    continue

                try:
                    previous = self.engine.transition(
                        vm, PowerState.SHUTOFF, options.force, timeout
                    )
                except VirsnapError as e:
                    outcome.fail(e.message)
                    self.logger.error(e.message, vm_name=vm.name)
                    continue

                outcome.previous_state = previous
                with self.restored_state(vm, previous, outcome, options.force, timeout):
                    self._snapshot(vm, outcome)
        finally:
            free_all(vms)

        return self._finish(result)

    def clean(
        self,
        patterns: Sequence[str],
        options: CleanOptions,
        confirm: Optional[Callable[[Snapshot], bool]] = None,
    ) -> OperationResult:
        """
        Remove the oldest virsnap snapshots of every matching VM beyond ``options.keep``.

        ``confirm`` is asked before every deletion unless ``options.assume_yes``.
        """
        if options.keep < 0:
            raise ValidationError(f"keep must be >= 0, got {options.keep}", "keep")

        snapshot_patterns = options.snapshot_patterns or [
            "^" + re.escape(self.config.snapshot_prefix)
        ]
        compile_patterns(snapshot_patterns)
        gate = None if options.assume_yes else confirm
        result = OperationResult("clean")

        vms = select_vms(self.hypervisor, patterns, self.logger)
        try:
            for vm in vms:
                outcome = VMOutcome(vm.name)
                result.outcomes.append(outcome)

                try:
                    snapshots = select_snapshots(vm, snapshot_patterns, self.logger)
                except VirsnapError as e:
                    outcome.fail(e.message)
                    self.logger.error(
                        f"Could not get the snapshots of VM {vm.name}: {e.message}",
                        vm_name=vm.name,
                    )
                    continue

                try:
                    pruned = prune_snapshots(vm.name, snapshots, options.keep, gate, self.logger)
                finally:
                    free_all(snapshots)

                for name in pruned.failed:
                    outcome.fail(f"could not remove snapshot {name}")
                for name in pruned.declined:
                    outcome.warnings.append(f"kept snapshot {name}")
        finally:
            free_all(vms)

        return self._finish(result)

    def export(self, patterns: Sequence[str], options: ExportOptions) -> OperationResult:
        """
        Shut every matching VM off, optionally snapshot it, copy its disks and
        descriptor to ``options.output_dir`` and restore its previous state.
        """
        output_dir = ensure_directory(options.output_dir)
        timeout = self._timeout(options.timeout)
        result = OperationResult("export")

        vms = select_vms(self.hypervisor, patterns, self.logger)
        if not vms:
            result.errors.append("no virtual machines matched the given pattern(s)")
            self.logger.error("There were no virtual machines matching the given pattern(s)")

        try:
            for vm in vms:
                outcome = VMOutcome(vm.name)
                result.outcomes.append(outcome)

                try:
                    previous = self.engine.transition(vm, PowerState.SHUTOFF, True, timeout)
                except VirsnapError as e:
                    outcome.fail(e.message)
                    self.logger.error(e.message, vm_name=vm.name)
                    continue

                outcome.previous_state = previous
                with self.restored_state(vm, previous, outcome, True, timeout):
                    if options.snapshot:
                        self._snapshot(vm, outcome)
                    self._export(vm, output_dir, outcome)

                if outcome.success:
                    self.logger.debug(f"Finished export of VM {vm.name}", vm_name=vm.name)
        finally:
            free_all(vms)

        return self._finish(result)

    def _export(self, vm: VM, output_dir: str, outcome: VMOutcome) -> None:
        try:
            failed_disks = export_vm(vm, output_dir, self.syncer, self.logger)
        except VirsnapError as e:
            outcome.fail(e.message)
            self.logger.error(f"Could not export VM {vm.name}: {e.message}", vm_name=vm.name)
            return
        for path in failed_disks:
            outcome.fail(f"could not export disk {path}")

    def list_vms(
        self, patterns: Optional[Sequence[str]] = None, with_snapshots: bool = True
    ) -> List[VMListing]:
        """Return the matching VMs with their state and snapshots, oldest first."""
        vms = select_vms(self.hypervisor, patterns or [MATCH_ALL], self.logger)
        listings = []
        try:
            for vm in vms:
                try:
                    state = self.engine.query_state(vm)
                except VirsnapError as e:
                    self.logger.warning(e.message, vm_name=vm.name)
                    state = PowerState.NOSTATE

                listing = VMListing(vm.name, state)
                listings.append(listing)
                if not with_snapshots:
                    continue

                try:
                    snapshots = select_snapshots(vm, [MATCH_ALL], self.logger)
                except VirsnapError as e:
                    self.logger.error(
                        f"Could not retrieve the snapshots of VM {vm.name}: {e.message}",
                        vm_name=vm.name,
                    )
                    continue

                listing.snapshots = [
                    SnapshotRow(s.name, s.creation_time, s.state, s.description)
                    for s in snapshots
                ]
                free_all(snapshots)
        finally:
            free_all(vms)

        return listings
