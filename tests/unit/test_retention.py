"""Unit tests for snapshot creation and retention pruning."""

import random
import xml.etree.ElementTree as ET

import pytest

from virsnap.exceptions import HypervisorError, SnapshotCreateError, ValidationError
from virsnap.hypervisor import Snapshot
from virsnap.retention import (
    DEFAULT_PREFIX,
    build_snapshot_descriptor,
    create_snapshot,
    generate_snapshot_name,
    prune_snapshots,
)
from virsnap.selection import select_snapshots


def _snapshots(vm, times):
    for i, creation_time in enumerate(times):
        vm.add_snapshot(f"virsnap_{i}", creation_time)
    return select_snapshots(vm, ["^virsnap_"])


class TestNames:

    @pytest.mark.unit
    def test_generated_name_has_prefix_and_slug(self):
        """Test generated names carry prefix and slug."""
        name = generate_snapshot_name(rng=random.Random(7))
        assert name.startswith(DEFAULT_PREFIX)
        adjective, surname = name[len(DEFAULT_PREFIX):].split("_")
        assert adjective.isalpha() and surname.isalpha()

    @pytest.mark.unit
    def test_generation_is_reproducible_with_seed(self):
        """Test name generation with a seeded random source."""
        assert generate_snapshot_name("n_", random.Random(1)) == \
            generate_snapshot_name("n_", random.Random(1))

    @pytest.mark.unit
    def test_descriptor(self):
        """Test snapshot descriptor XML."""
        root = ET.fromstring(build_snapshot_descriptor("virsnap_a_b", "nightly <run>"))
        assert root.tag == "domainsnapshot"
        assert root.findtext("name") == "virsnap_a_b"
        assert root.findtext("description") == "nightly <run>"


class TestCreateSnapshot:

    @pytest.mark.unit
    def test_create(self, fake_vm):
        """Test snapshot creation."""
        vm = fake_vm("web01")
        snapshot = create_snapshot(vm, name_factory=lambda: "virsnap_happy_turing")
        assert snapshot.name == "virsnap_happy_turing"
        assert snapshot.description == "snapshot created by virsnap"
        assert [s["name"] for s in vm.snapshots] == ["virsnap_happy_turing"]

    @pytest.mark.unit
    def test_name_collision_is_regenerated(self, fake_vm):
        """Test a colliding name is regenerated."""
        vm = fake_vm("web01")
        vm.add_snapshot("virsnap_happy_turing", 10)
        names = iter(["virsnap_happy_turing", "virsnap_happy_turing", "virsnap_bold_curie"])

        snapshot = create_snapshot(vm, name_factory=lambda: next(names))
        assert snapshot.name == "virsnap_bold_curie"
        assert vm.calls == ["create_snapshot"]

    @pytest.mark.unit
    def test_prefix_and_description(self, fake_vm):
        """Test custom prefix and description."""
        vm = fake_vm()
        snapshot = create_snapshot(vm, prefix="nightly_", description="cron")
        assert snapshot.name.startswith("nightly_")
        assert snapshot.description == "cron"

    @pytest.mark.unit
    def test_rejected_snapshot(self, fake_vm):
        """Test rejected snapshot raises SnapshotCreateError."""
        vm = fake_vm(errors={"create_snapshot": HypervisorError("disk busy", "create_snapshot")})
        with pytest.raises(SnapshotCreateError, match="disk busy") as exc_info:
            create_snapshot(vm, name_factory=lambda: "virsnap_a_b")
        assert exc_info.value.snapshot_name == "virsnap_a_b"


class TestPrune:

    @pytest.mark.unit
    @pytest.mark.parametrize("count,keep,deleted", [
        (0, 0, 0),
        (3, 0, 3),
        (3, 2, 1),
        (3, 3, 0),
        (3, 10, 0),
    ])
    def test_keep_counts(self, fake_vm, count, keep, deleted):
        """Test number of deletions for each keep count."""
        vm = fake_vm()
        snapshots = _snapshots(vm, range(100, 100 + count))
        result = prune_snapshots(vm.name, snapshots, keep)
        assert len(result.deleted) == deleted
        assert len(vm.snapshots) == count - deleted

    @pytest.mark.unit
    def test_oldest_are_deleted_first(self, fake_vm):
        """Test oldest snapshots are deleted first."""
        vm = fake_vm("db1")
        snapshots = _snapshots(vm, [30, 10, 40, 20])

        result = prune_snapshots("db1", snapshots, 2)

        # creation times 10 and 20
        assert result.deleted == ["virsnap_1", "virsnap_3"]
        assert [s["creation_time"] for s in vm.snapshots] == [30, 40]
        assert result.success

    @pytest.mark.unit
    def test_negative_keep(self, fake_vm):
        """Test negative keep count is rejected."""
        with pytest.raises(ValidationError):
            prune_snapshots("vm1", [], -1)

    @pytest.mark.unit
    def test_declined_deletion_is_skipped(self, fake_vm):
        """Test declined deletion is skipped."""
        vm = fake_vm()
        snapshots = _snapshots(vm, [1, 2, 3])
        asked = []

        def confirm(snapshot: Snapshot) -> bool:
            asked.append(snapshot.name)
            return snapshot.name != "virsnap_0"

        result = prune_snapshots(vm.name, snapshots, 1, confirm)
        assert asked == ["virsnap_0", "virsnap_1"]
        assert result.declined == ["virsnap_0"]
        assert result.deleted == ["virsnap_1"]
        assert result.success

    @pytest.mark.unit
    def test_failed_deletion_continues(self, fake_vm):
        """Test failed deletion continues with the next one."""
        vm = fake_vm(errors={"delete_snapshot": [HypervisorError("locked", "delete_snapshot")]})
        snapshots = _snapshots(vm, [1, 2, 3])

        result = prune_snapshots(vm.name, snapshots, 0)
        assert result.failed == ["virsnap_0"]
        assert result.deleted == ["virsnap_1", "virsnap_2"]
        assert not result.success
