"""Test configuration and fixtures for virsnap."""

import pytest
import sys
from pathlib import Path
from unittest.mock import MagicMock

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from virsnap.hypervisor import Snapshot, parse_snapshot_descriptor  # noqa: E402
from virsnap.logging import StructuredLogger  # noqa: E402
from virsnap.models import PowerState  # noqa: E402
from virsnap.transition import TransitionEngine  # noqa: E402


SAMPLE_DOMAIN_XML = """<domain type='kvm'>
  <name>{name}</name>
  <devices>
    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source file='/var/lib/libvirt/images/{name}.qcow2'/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <disk type='file' device='disk'>
      <driver name='qemu' type='raw'/>
      <source file='/srv/data/{name}-data.img'/>
      <target dev='vdb' bus='virtio'/>
    </disk>
    <disk type='file' device='cdrom'>
      <source file='/srv/iso/install.iso'/>
      <target dev='sda' bus='sata'/>
    </disk>
  </devices>
</domain>"""


def snapshot_xml(name: str, creation_time: int = 0, state: str = "running",
                 description: str = "snapshot created by virsnap") -> str:
    return (
        f"<domainsnapshot><name>{name}</name>"
        f"<description>{description}</description>"
        f"<state>{state}</state>"
        f"<creationTime>{creation_time}</creationTime></domainsnapshot>"
    )


class FakeClock:
    """Monotonic clock that only advances when sleep() is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeVM:
    """
    In-memory VM with the same interface as virsnap.hypervisor.VM.

    State-changing calls apply their natural effect. A shutdown request only
    takes effect after ``shutdown_after`` state queries (never when None).
    ``script`` lists states returned by the next queries, overriding the
    current state. ``errors`` maps an operation name to an exception, or to a
    list of exceptions raised by successive calls (None entries succeed).
    """

    EFFECTS = {
        "suspend": PowerState.PAUSED,
        "resume": PowerState.RUNNING,
        "power_on": PowerState.RUNNING,
        "pm_suspend": PowerState.PMSUSPENDED,
        "pm_wakeup": PowerState.RUNNING,
        "destroy": PowerState.SHUTOFF,
    }

    def __init__(self, name="vm1", state=PowerState.RUNNING, shutdown_after=1,
                 script=None, errors=None, snapshots=None, xml=None):
        self.name = name
        self.state = state
        self.shutdown_after = shutdown_after
        self.script = list(script or [])
        self.errors = dict(errors or {})
        self.calls = []
        self.freed = 0
        self.snapshots = list(snapshots or [])
        self.xml = xml if xml is not None else SAMPLE_DOMAIN_XML.format(name=name)
        self._pending_shutdown = None
        self._clock = 1000

    def _fail(self, operation):
        error = self.errors.get(operation)
        if isinstance(error, list):
            error = error.pop(0) if error else None
        if error is not None:
            raise error

    def _act(self, operation):
        self.calls.append(operation)
        self._fail(operation)
        self.state = self.EFFECTS[operation]
        self._pending_shutdown = None

    def get_state(self):
        self._fail("get_state")
        if self.script:
            self.state = self.script.pop(0)
        elif self._pending_shutdown is not None:
            self._pending_shutdown -= 1
            if self._pending_shutdown <= 0:
                self.state = PowerState.SHUTOFF
                self._pending_shutdown = None
        return self.state

    def suspend(self):
        self._act("suspend")

    def resume(self):
        self._act("resume")

    def power_on(self):
        self._act("power_on")

    def pm_suspend(self):
        self._act("pm_suspend")

    def pm_wakeup(self):
        self._act("pm_wakeup")

    def destroy(self):
        self._act("destroy")

    def shutdown(self):
        self.calls.append("shutdown")
        self._fail("shutdown")
        if self.shutdown_after is not None and self._pending_shutdown is None:
            self._pending_shutdown = self.shutdown_after

    def describe(self):
        self._fail("describe")
        return self.name

    def descriptor(self):
        self._fail("descriptor")
        return self.xml

    def add_snapshot(self, name, creation_time, state="running"):
        self.snapshots.append(
            {"name": name, "description": "", "creation_time": creation_time, "state": state}
        )

    def _remove_snapshot(self, name):
        self._fail("delete_snapshot")
        self.calls.append(f"delete:{name}")
        self.snapshots = [s for s in self.snapshots if s["name"] != name]

    def _snapshot(self, fields):
        handle = MagicMock()
        handle.delete.side_effect = lambda flags: self._remove_snapshot(fields["name"])
        return Snapshot(handle, self.name, **fields)

    def list_snapshots(self, log=None):
        self._fail("list_snapshots")
        return [self._snapshot(dict(fields)) for fields in self.snapshots]

    def create_snapshot(self, xml_desc):
        self.calls.append("create_snapshot")
        self._fail("create_snapshot")
        fields = parse_snapshot_descriptor(xml_desc)
        self._clock += 1
        fields["creation_time"] = self._clock
        fields["state"] = self.state.label
        self.snapshots.append(dict(fields))
        return self._snapshot(fields)

    def free(self):
        self.freed += 1


class FakeHypervisor:
    """Hypervisor double listing a fixed set of FakeVMs."""

    def __init__(self, vms):
        self.vms = list(vms)
        self.closed = False

    def list_domains(self):
        return list(self.vms)

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    """Fake clock driving the polling loops without real waiting."""
    return FakeClock()


@pytest.fixture
def test_logger():
    """Logger writing to a discarded stream at debug level."""
    import io
    import logging

    return StructuredLogger("virsnap.tests", level=logging.DEBUG, stream=io.StringIO())


@pytest.fixture
def engine(clock, test_logger):
    """Transition engine with a 5 second poll interval and 3 shutdown rounds."""
    return TransitionEngine(
        poll_interval=5.0,
        shutdown_rounds=3,
        log=test_logger,
        sleep=clock.sleep,
        clock=clock.time,
    )


@pytest.fixture
def fake_vm():
    """Factory for in-memory VMs."""
    return FakeVM


@pytest.fixture
def fake_hypervisor():
    """Factory for hypervisors listing in-memory VMs."""
    return FakeHypervisor


@pytest.fixture
def domain_xml():
    """Domain descriptor with two file disks and a cdrom."""
    return SAMPLE_DOMAIN_XML.format(name="web01")
