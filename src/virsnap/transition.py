"""
Power-state transition engine.

Moves a VM from its current power state to a requested target state. Every
(current, target) pair is dispatched through an explicit table; multi-hop
transitions go through RUNNING. A transition returns the state the VM was in
before the call so callers can restore it afterwards.
"""

import time
from typing import Callable, Dict, Optional, Tuple

from .exceptions import (
    GracefulShutdownTimeoutError,
    HypervisorError,
    InvalidTargetStateError,
    InvalidVMStateError,
    StateQueryError,
    TransitionError,
    TransitionTimeoutError,
)
from .hypervisor import VM
from .logging import StructuredLogger, logger
from .models import PowerState, TARGET_STATES
from .polling import poll_until

Handler = Callable[[VM, PowerState, PowerState, bool, float], PowerState]


class TransitionEngine:
    """Drives VMs through power states with bounded retries and timeouts."""

    def __init__(
        self,
        poll_interval: float = 5.0,
        shutdown_rounds: int = 3,
        log: Optional[StructuredLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.poll_interval = poll_interval
        self.shutdown_rounds = shutdown_rounds
        self.logger = log or logger
        self._sleep = sleep
        self._clock = clock
        self._table = self._build_table()

    def _build_table(self) -> Dict[Tuple[PowerState, PowerState], Handler]:
        S = PowerState
        table: Dict[Tuple[PowerState, PowerState], Handler] = {}

        for target in TARGET_STATES:
            table[(S.NOSTATE, target)] = self._invalid
            table[(S.BLOCKED, target)] = self._await_unblocked
            table[(S.SHUTDOWN, target)] = self._await_shutoff_then

        table.update(
            {
                (S.SHUTDOWN, S.SHUTOFF): self._await_shutoff,
                (S.RUNNING, S.RUNNING): self._noop,
                (S.RUNNING, S.PAUSED): self._suspend,
                (S.RUNNING, S.PMSUSPENDED): self._pm_suspend,
                (S.RUNNING, S.SHUTOFF): self._graceful_shutdown,
                (S.SHUTOFF, S.SHUTOFF): self._noop,
                (S.SHUTOFF, S.RUNNING): self._power_on,
                (S.SHUTOFF, S.PAUSED): self._via_running,
                (S.SHUTOFF, S.PMSUSPENDED): self._via_running,
                # crashed counts as shutoff only for the idempotence check
                (S.CRASHED, S.SHUTOFF): self._noop,
                (S.CRASHED, S.RUNNING): self._power_on,
                (S.CRASHED, S.PAUSED): self._invalid,
                (S.CRASHED, S.PMSUSPENDED): self._invalid,
                (S.PAUSED, S.PAUSED): self._noop,
                (S.PAUSED, S.RUNNING): self._resume,
                (S.PAUSED, S.SHUTOFF): self._via_running,
                (S.PAUSED, S.PMSUSPENDED): self._via_running,
                (S.PMSUSPENDED, S.PMSUSPENDED): self._noop,
                (S.PMSUSPENDED, S.RUNNING): self._pm_wakeup,
                (S.PMSUSPENDED, S.SHUTOFF): self._via_running,
                (S.PMSUSPENDED, S.PAUSED): self._via_running,
            }
        )
        return table

    def transition(
        self,
        vm: VM,
        target: PowerState,
        force_on_timeout: bool = False,
        timeout: float = 3,
    ) -> PowerState:
        """
        Move ``vm`` to ``target``.

        Args:
            vm: VM handle
            target: One of RUNNING, PAUSED, PMSUSPENDED, SHUTOFF
            force_on_timeout: Destroy the VM if a graceful shutdown times out
            timeout: Total timeout in minutes

        Returns:
            PowerState: The state of the VM immediately before the call

        Raises:
            InvalidTargetStateError: If target is not a requestable state
            StateQueryError: If the current state cannot be retrieved
            TransitionError: If a state-changing call fails
        """
        target = PowerState.from_code(int(target))
        if target not in TARGET_STATES:
            raise InvalidTargetStateError(target.label)

        current = self.query_state(vm)
        self.logger.debug(
            f"Initial state of VM {vm.name} is {current.label}",
            vm_name=vm.name,
            state=current.label,
            target=target.label,
        )
        return self._dispatch(vm, current, target, force_on_timeout, timeout)

    def query_state(self, vm: VM) -> PowerState:
        try:
            return vm.get_state()
        except HypervisorError as e:
            raise StateQueryError(vm.name, e.message)

    def _dispatch(
        self,
        vm: VM,
        current: PowerState,
        target: PowerState,
        force: bool,
        timeout: float,
    ) -> PowerState:
        handler = self._table[(current, target)]
        return handler(vm, current, target, force, timeout)

    def _poll_state(self, vm: VM) -> Optional[PowerState]:
        try:
            return vm.get_state()
        except HypervisorError as e:
            self.logger.warning(
                f"Could not re-retrieve the state of VM {vm.name}, trying again: {e.message}",
                vm_name=vm.name,
            )
            return None

    def _wait_for(
        self, vm: VM, wanted: PowerState, seconds: float
    ) -> Tuple[bool, Optional[PowerState]]:
        last: Optional[PowerState] = None

        def reached() -> bool:
            nonlocal last
            state = self._poll_state(vm)
            if state is not None:
                last = state
            return state == wanted

        ok = poll_until(reached, self.poll_interval, seconds, self._sleep, self._clock)
        return ok, last

    def _change(self, vm: VM, operation: str, call: Callable[[], None]) -> None:
        self.logger.debug(f"Sending {operation} request to VM {vm.name}", vm_name=vm.name)
        try:
            call()
        except HypervisorError as e:
            raise TransitionError(vm.name, operation, e.message)

    def _noop(self, vm, current, target, force, timeout):
        return current

    def _invalid(self, vm, current, target, force, timeout):
        raise InvalidVMStateError(vm.name, current.label, target.label)

    def _suspend(self, vm, current, target, force, timeout):
        self._change(vm, "suspend", vm.suspend)
        return current

    def _pm_suspend(self, vm, current, target, force, timeout):
        self._change(vm, "pm-suspend", vm.pm_suspend)
        return current

    def _resume(self, vm, current, target, force, timeout):
        self._change(vm, "resume", vm.resume)
        return current

    def _pm_wakeup(self, vm, current, target, force, timeout):
        self._change(vm, "wake up", vm.pm_wakeup)
        return current

    def _power_on(self, vm, current, target, force, timeout):
        self._change(vm, "boot up", vm.power_on)
        return current

    def _via_running(self, vm, current, target, force, timeout):
        self._dispatch(vm, current, PowerState.RUNNING, force, timeout)

        observed = self.query_state(vm)
        if observed != PowerState.RUNNING:
            self.logger.warning(
                f"VM {vm.name} is {observed.label} instead of running after the "
                "intermediate transition; it was changed concurrently",
                vm_name=vm.name,
                state=observed.label,
            )
        # the second hop must be a single change from the observed state
        if observed not in (PowerState.RUNNING, target):
            raise InvalidVMStateError(vm.name, observed.label, target.label)
        self._dispatch(vm, observed, target, force, timeout)
        return current

    def _graceful_shutdown(self, vm, current, target, force, timeout):
        round_budget = timeout * 60 / self.shutdown_rounds
        last_state = current

        for attempt in range(1, self.shutdown_rounds + 1):
            self.logger.debug(
                f"Sending shutdown request {attempt}/{self.shutdown_rounds} to VM {vm.name}",
                vm_name=vm.name,
            )
            try:
                vm.shutdown()
            except HypervisorError as e:
                if attempt > 1 and e.operation_invalid:
                    # the VM reached shutoff between two polls
                    self.logger.debug(
                        f"VM {vm.name} is no longer running", vm_name=vm.name
                    )
                    return current
                raise TransitionError(vm.name, "shut down", e.message)

            reached, observed = self._wait_for(vm, PowerState.SHUTOFF, round_budget)
            if reached:
                return current
            if observed is not None:
                last_state = observed
            if attempt < self.shutdown_rounds:
                self.logger.warning(
                    f"VM {vm.name} did not shut down yet, re-sending the shutdown request",
                    vm_name=vm.name,
                    state=last_state.label,
                )

        if force:
            self.logger.warning(
                f"Graceful shutdown of VM {vm.name} timed out, forcing power-off",
                vm_name=vm.name,
            )
            self._destroy(vm)
            return current

        raise GracefulShutdownTimeoutError(vm.name, last_state.label, timeout)

    def _destroy(self, vm: VM) -> None:
        try:
            vm.destroy()
        except HypervisorError as e:
            if e.operation_invalid:
                return
            raise TransitionError(vm.name, "destroy", e.message)

    def _await_shutoff(self, vm, current, target, force, timeout):
        reached, observed = self._wait_for(vm, PowerState.SHUTOFF, timeout * 60)
        if not reached:
            if force:
                self._destroy(vm)
            else:
                state = observed.label if observed is not None else current.label
                self.logger.warning(
                    f"VM {vm.name} is still {state} after {timeout:g} minute(s)",
                    vm_name=vm.name,
                )
        return PowerState.SHUTOFF

    def _await_shutoff_then(self, vm, current, target, force, timeout):
        reached, observed = self._wait_for(vm, PowerState.SHUTOFF, timeout * 60)
        if not reached:
            state = observed if observed is not None else current
            raise TransitionTimeoutError(vm.name, state.label, timeout)
        self._dispatch(vm, PowerState.SHUTOFF, target, force, timeout)
        return PowerState.SHUTOFF

    def _await_unblocked(self, vm, current, target, force, timeout):
        observed: Optional[PowerState] = None

        def unblocked() -> bool:
            nonlocal observed
            state = self._poll_state(vm)
            if state is not None:
                observed = state
            return state is not None and state != PowerState.BLOCKED

        if not poll_until(unblocked, self.poll_interval, timeout * 60, self._sleep, self._clock):
            raise TransitionTimeoutError(vm.name, PowerState.BLOCKED.label, timeout)

        self.logger.debug(
            f"VM {vm.name} is no longer blocked, now {observed.label}", vm_name=vm.name
        )
        return self._dispatch(vm, observed, target, force, timeout)
