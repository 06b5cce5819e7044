"""
Custom exceptions for virsnap operations.

This module defines all custom exceptions used throughout virsnap.
"""

from typing import Optional


class VirsnapError(Exception):
    """Base exception for virsnap operations."""

    def __init__(self, message: str, error_code: int = 1000) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ConfigurationError(VirsnapError):
    """Configuration-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=1001)


class HypervisorError(VirsnapError):
    """Errors reported by the hypervisor control interface (libvirt)."""

    # libvirt's VIR_ERR_OPERATION_INVALID
    OPERATION_INVALID = 55

    def __init__(
        self, message: str, operation: str = "unknown", code: Optional[int] = None
    ) -> None:
        super().__init__(
            f"Hypervisor error during {operation}: {message}", error_code=1002
        )
        self.operation = operation
        self.code = code

    @property
    def operation_invalid(self) -> bool:
        """True if the hypervisor rejected the call as invalid in the current state."""
        return self.code == self.OPERATION_INVALID


class ValidationError(VirsnapError):
    """Validation errors."""

    def __init__(self, message: str, validation_type: str = "general") -> None:
        super().__init__(
            f"Validation error ({validation_type}): {message}", error_code=1003
        )
        self.validation_type = validation_type


class InvalidPatternError(VirsnapError):
    """A name pattern could not be compiled as a regular expression."""

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(
            f"Could not compile the regular expression '{pattern}': {reason}",
            error_code=1101,
        )
        self.pattern = pattern


class NoPatternSpecifiedError(VirsnapError):
    """An empty pattern set was given."""

    def __init__(self) -> None:
        super().__init__("No regular expression was specified", error_code=1102)


class InvalidTargetStateError(VirsnapError):
    """A transition was requested to a state callers may not request."""

    def __init__(self, target: str) -> None:
        super().__init__(
            f"'{target}' is not a valid target state", error_code=1201
        )
        self.target = target


class InvalidVMStateError(VirsnapError):
    """The VM is in a state that cannot be transitioned from."""

    def __init__(self, vm_name: str, state: str, target: Optional[str] = None) -> None:
        message = f"VM '{vm_name}' is in invalid state '{state}'"
        if target:
            message += f" for a transition to '{target}'"
        super().__init__(message, error_code=1202)
        self.vm_name = vm_name
        self.state = state
        self.target = target


class StateQueryError(VirsnapError):
    """The current state of a VM could not be retrieved."""

    def __init__(self, vm_name: str, reason: str) -> None:
        super().__init__(
            f"Could not retrieve the state of VM '{vm_name}': {reason}",
            error_code=1203,
        )
        self.vm_name = vm_name


class TransitionError(VirsnapError):
    """A state-changing hypervisor call failed."""

    def __init__(self, vm_name: str, operation: str, reason: str) -> None:
        super().__init__(
            f"Could not {operation} VM '{vm_name}': {reason}", error_code=1204
        )
        self.vm_name = vm_name
        self.operation = operation


class GracefulShutdownTimeoutError(VirsnapError):
    """The VM did not shut down gracefully within the timeout."""

    def __init__(self, vm_name: str, last_state: str, timeout: float) -> None:
        super().__init__(
            f"VM '{vm_name}' did not shut down within {timeout:g} minute(s); "
            f"state is '{last_state}'",
            error_code=1205,
        )
        self.vm_name = vm_name
        self.last_state = last_state
        self.timeout = timeout


class TransitionTimeoutError(VirsnapError):
    """The VM did not leave a transient state within the timeout."""

    def __init__(self, vm_name: str, state: str, timeout: float) -> None:
        super().__init__(
            f"VM '{vm_name}' still in state '{state}' after {timeout:g} minute(s)",
            error_code=1206,
        )
        self.vm_name = vm_name
        self.state = state
        self.timeout = timeout


class SnapshotCreateError(VirsnapError):
    """Snapshot creation was rejected by the hypervisor."""

    def __init__(self, vm_name: str, snapshot_name: str, reason: str) -> None:
        super().__init__(
            f"Could not create snapshot '{snapshot_name}' of VM '{vm_name}': {reason}",
            error_code=1301,
        )
        self.vm_name = vm_name
        self.snapshot_name = snapshot_name


class SnapshotDeleteError(VirsnapError):
    """Snapshot deletion failed."""

    def __init__(self, vm_name: str, snapshot_name: str, reason: str) -> None:
        super().__init__(
            f"Could not remove snapshot '{snapshot_name}' of VM '{vm_name}': {reason}",
            error_code=1302,
        )
        self.vm_name = vm_name
        self.snapshot_name = snapshot_name


class DescriptorParseError(VirsnapError):
    """An XML descriptor could not be retrieved or parsed."""

    def __init__(self, entity: str, reason: str) -> None:
        super().__init__(
            f"Could not parse the descriptor of {entity}: {reason}", error_code=1303
        )
        self.entity = entity


class ExportError(VirsnapError):
    """Disk or descriptor export errors."""

    def __init__(self, message: str, path: str) -> None:
        super().__init__(f"Export error for {path}: {message}", error_code=1401)
        self.path = path
