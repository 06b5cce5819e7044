"""
Libvirt API wrapper for virsnap.

This module provides the hypervisor control interface used by the engines:
a connection object, and VM and snapshot handles whose libvirt failures are
translated into HypervisorError.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Any, Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    import libvirt
else:
    try:
        import libvirt  # type: ignore[import-untyped,import-not-found]
    except ImportError:
        libvirt = None  # type: ignore[assignment]

from .exceptions import DescriptorParseError, HypervisorError
from .logging import StructuredLogger, logger
from .models import DiskInfo, PowerState


def _libvirt_errors() -> tuple:
    """Exception types raised by the libvirt binding, none when it is missing."""
    return (libvirt.libvirtError,) if libvirt is not None else ()


def _invoke(operation: str, func: Callable[..., Any], *args: Any) -> Any:
    """Call a libvirt function and translate its errors."""
    try:
        return func(*args)
    except _libvirt_errors() as e:
        raise HypervisorError(str(e), operation, e.get_error_code()) from e


def parse_snapshot_descriptor(xml_desc: str) -> Dict[str, Any]:
    """Extract name, description, creation time and state from a snapshot XML."""
    try:
        root = ET.fromstring(xml_desc)
    except ET.ParseError as e:
        raise DescriptorParseError("snapshot", str(e))

    name = root.findtext("name")
    if not name:
        raise DescriptorParseError("snapshot", "missing <name>")

    creation_time = root.findtext("creationTime")
    try:
        timestamp = int(creation_time) if creation_time is not None else 0
    except ValueError:
        raise DescriptorParseError(
            f"snapshot '{name}'", f"invalid <creationTime> '{creation_time}'"
        )

    return {
        "name": name,
        "description": root.findtext("description") or "",
        "creation_time": timestamp,
        "state": root.findtext("state") or "",
    }


def parse_domain_name(xml_desc: str) -> str:
    """Return the name element of a domain XML."""
    try:
        root = ET.fromstring(xml_desc)
    except ET.ParseError as e:
        raise DescriptorParseError("domain", str(e))
    name = root.findtext("name")
    if not name:
        raise DescriptorParseError("domain", "missing <name>")
    return name


def parse_disks(xml_desc: str) -> List[DiskInfo]:
    """Return the file-backed disks (not cdroms or floppies) of a domain XML."""
    try:
        root = ET.fromstring(xml_desc)
    except ET.ParseError as e:
        raise DescriptorParseError("domain", str(e))

    disks = []
    for disk_elem in root.findall("./devices/disk"):
        if disk_elem.get("device", "disk") != "disk":
            continue
        source = disk_elem.find("source")
        target = disk_elem.find("target")
        driver = disk_elem.find("driver")
        disks.append(
            DiskInfo(
                path=source.get("file", "") if source is not None else "",
                target=target.get("dev", "") if target is not None else "",
                format=driver.get("type", "raw") if driver is not None else "raw",
            )
        )
    return disks


class Snapshot:
    """Handle to one snapshot of a VM."""

    def __init__(
        self,
        handle: Any,
        vm_name: str,
        name: str,
        description: str = "",
        creation_time: int = 0,
        state: str = "",
    ) -> None:
        self._handle = handle
        self.vm_name = vm_name
        self.name = name
        self.description = description
        self.creation_time = creation_time
        self.state = state

    @classmethod
    def from_handle(cls, handle: Any, vm_name: str) -> "Snapshot":
        """Build a snapshot from a libvirt handle, reading its descriptor."""
        try:
            xml_desc = _invoke("snapshot_descriptor", handle.getXMLDesc, 0)
        except HypervisorError as e:
            raise DescriptorParseError(f"a snapshot of VM '{vm_name}'", str(e))
        fields = parse_snapshot_descriptor(xml_desc)
        return cls(handle, vm_name, **fields)

    @property
    def released(self) -> bool:
        return self._handle is None

    def delete(self) -> None:
        if self._handle is None:
            raise HypervisorError("snapshot handle already released", "delete_snapshot")
        _invoke("delete_snapshot", self._handle.delete, 0)

    def free(self) -> None:
        """Release the hypervisor handle. Further calls are no-ops."""
        self._handle = None

    def __enter__(self) -> "Snapshot":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.free()

    def __repr__(self) -> str:
        return (
            f"Snapshot(vm={self.vm_name!r}, name={self.name!r}, "
            f"creation_time={self.creation_time})"
        )


class VM:
    """Handle to one hypervisor domain."""

    def __init__(self, domain: Any, name: Optional[str] = None) -> None:
        self._domain = domain
        self._name = name

    @property
    def name(self) -> str:
        if self._name is None:
            self._name = _invoke("domain_name", self._domain.name)
        return self._name

    @property
    def released(self) -> bool:
        return self._domain is None

    def descriptor(self) -> str:
        """Return the XML descriptor of the domain."""
        return _invoke("domain_descriptor", self._domain.XMLDesc, 0)

    def describe(self) -> str:
        """Read the name from the domain descriptor.

        Raises:
            DescriptorParseError: If the descriptor cannot be retrieved or parsed
        """
        try:
            xml_desc = self.descriptor()
        except HypervisorError as e:
            raise DescriptorParseError("a VM", e.message)
        self._name = parse_domain_name(xml_desc)
        return self._name

    def disks(self) -> List[DiskInfo]:
        return parse_disks(self.descriptor())

    def get_state(self) -> PowerState:
        state, _reason = _invoke("get_state", self._domain.state)
        return PowerState.from_code(state)

    def suspend(self) -> None:
        _invoke("suspend", self._domain.suspend)

    def resume(self) -> None:
        _invoke("resume", self._domain.resume)

    def shutdown(self) -> None:
        # returns immediately, the guest shuts down asynchronously
        _invoke("shutdown", self._domain.shutdown)

    def destroy(self) -> None:
        _invoke("destroy", self._domain.destroy)

    def power_on(self) -> None:
        _invoke("power_on", self._domain.create)

    def pm_suspend(self) -> None:
        _invoke(
            "pm_suspend",
            self._domain.pMSuspendForDuration,
            libvirt.VIR_NODE_SUSPEND_TARGET_MEM,
            0,
            0,
        )

    def pm_wakeup(self) -> None:
        _invoke("pm_wakeup", self._domain.pMWakeup, 0)

    def list_snapshots(self, log: Optional[StructuredLogger] = None) -> List[Snapshot]:
        """
        Return all snapshots of the domain in enumeration order.

        Snapshots whose descriptor cannot be read are skipped with a warning.
        """
        log = log or logger
        handles = _invoke("list_snapshots", self._domain.listAllSnapshots, 0)
        snapshots = []
        for handle in handles:
            try:
                snapshots.append(Snapshot.from_handle(handle, self.name))
            except DescriptorParseError as e:
                log.warning(f"{e.message}; skipping this snapshot", vm_name=self.name)
        return snapshots

    def create_snapshot(self, xml_desc: str) -> Snapshot:
        handle = _invoke("create_snapshot", self._domain.snapshotCreateXML, xml_desc, 0)
        try:
            return Snapshot.from_handle(handle, self.name)
        except DescriptorParseError:
            # created, but the hypervisor descriptor is unreadable
            return Snapshot(handle, self.name, **parse_snapshot_descriptor(xml_desc))

    def free(self) -> None:
        """Release the hypervisor handle. Further calls are no-ops."""
        self._domain = None

    def __enter__(self) -> "VM":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.free()

    def __repr__(self) -> str:
        return f"VM(name={self._name!r})"


def free_all(handles: Iterable[Any]) -> None:
    """Release every VM or snapshot handle of a sequence."""
    for handle in handles:
        handle.free()


class Hypervisor:
    """Connection to the hypervisor control interface."""

    def __init__(self, uri: str = "qemu:///system", log: Optional[StructuredLogger] = None) -> None:
        self.uri = uri
        self.logger = log or logger
        self._conn: Any = None

    def connect(self) -> Any:
        """Open the libvirt connection, reusing a live one."""
        if self._conn is not None:
            if self._conn.isAlive():
                return self._conn
            self._conn = None

        if libvirt is None:
            raise HypervisorError("libvirt-python is not installed", "connection")

        conn = _invoke("connection", libvirt.open, self.uri)
        if conn is None:
            raise HypervisorError(f"Failed to connect to {self.uri}", "connection")

        self._conn = conn
        self.logger.debug(f"Connected to libvirt at {self.uri}", uri=self.uri)
        return conn

    def list_domains(self) -> List[VM]:
        """Return a handle for every domain known to the hypervisor."""
        conn = self.connect()
        # 0 means no filtering: active and inactive domains
        domains = _invoke("list_domains", conn.listAllDomains, 0)
        return [VM(domain) for domain in domains]

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except _libvirt_errors() as e:
            self.logger.warning(f"Failed to close libvirt connection: {e}")
        self._conn = None
        self.logger.debug("libvirt connection closed", uri=self.uri)

    def __enter__(self) -> "Hypervisor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
