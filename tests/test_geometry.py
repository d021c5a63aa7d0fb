"""Tests for storage/geometry.py - partition plan arithmetic.

This test suite covers:
- Alignment helpers (ceiling division)
- Boot/root/home sizing policy
- Layout invariants: ordering, alignment, non-overlap, containment
- Slot symmetry
- Home clamping and capacity errors
- Partition numbering for both layout variants
"""

import pytest

from ab_partitioner.domain.models import (
    ALIGNMENT_SECTORS,
    MIB,
    SECTOR_SIZE,
    FilesystemKind,
    PartitionPlan,
    PartitionRole,
    PartitionSpec,
    PartitionStyle,
)
from ab_partitioner.storage import geometry
from ab_partitioner.storage.exceptions import CapacityError, PartitionError


def assert_plan_invariants(plan: PartitionPlan):
    specs = list(plan)
    starts = [spec.start for spec in specs]
    assert starts == sorted(starts)
    for spec in specs:
        assert spec.start % ALIGNMENT_SECTORS == 0
        assert spec.end >= spec.start
    for group in (plan.primaries, plan.logicals):
        for index, first in enumerate(group):
            for second in group[index + 1 :]:
                assert not first.overlaps(second)
    for spec in plan.logicals:
        assert plan.extended.contains(spec)
    assert plan.logicals[-1].end < plan.last_sector
    used_bytes = sum(spec.size_bytes for spec in plan.formattable)
    assert used_bytes + plan.budget.buffer_bytes <= plan.device_bytes


class TestAlignUp:
    """Tests for align_up() and bytes_to_sectors()."""

    def test_exact_multiple_unchanged(self):
        assert geometry.align_up(4096, 2048) == 4096

    def test_rounds_up(self):
        assert geometry.align_up(2049, 2048) == 4096
        assert geometry.align_up(1, MIB) == MIB

    def test_zero(self):
        assert geometry.align_up(0, 2048) == 0

    def test_bytes_to_sectors_rounds_up(self):
        assert geometry.bytes_to_sectors(512) == 1
        assert geometry.bytes_to_sectors(513) == 2


class TestComputeBudget:
    """Tests for compute_budget() sizing policy."""

    def test_boot_minimum_dominates_small_content(self, tryboot_profile):
        """Test tiny boot content still gets the minimum boot size."""
        budget = geometry.compute_budget(tryboot_profile, 10 * MIB, 0)
        assert budget.boot_bytes == 256 * MIB

    def test_boot_margin_added_to_large_content(self, standard_profile):
        """Test 200 MiB of content gives 264 MiB boot partitions."""
        budget = geometry.compute_budget(standard_profile, 200 * MIB, 0)
        assert budget.boot_bytes == 264 * MIB

    @pytest.mark.parametrize("boot_bytes", [0, 1, 191 * MIB + 1, 300 * MIB + 12345])
    def test_boot_is_smallest_aligned_size_above_floor(self, tryboot_profile, boot_bytes):
        budget = geometry.compute_budget(tryboot_profile, boot_bytes, 0)
        floor = max(boot_bytes + 64 * MIB, 256 * MIB)
        assert budget.boot_bytes % MIB == 0
        assert floor <= budget.boot_bytes < floor + MIB

    def test_root_ignores_measured_content(self, standard_profile):
        """Test the root size is the fixed target regardless of content."""
        small = geometry.compute_budget(standard_profile, 0, 100 * MIB)
        large = geometry.compute_budget(standard_profile, 0, 2400 * MIB)
        assert small.root_bytes == large.root_bytes == 2500 * MIB

    def test_tryboot_profile_root_target(self, tryboot_profile):
        budget = geometry.compute_budget(tryboot_profile, 0, 0)
        assert budget.root_bytes == 2900 * MIB
        assert budget.tryboot_bytes == 16 * MIB

    def test_required_bytes(self, standard_profile):
        budget = geometry.compute_budget(standard_profile, 200 * MIB, 0)
        assert budget.required_bytes == (1 + 2 * 264 + 2 * 2500 + 8 + 32) * MIB

    def test_negative_sizes_rejected(self, tryboot_profile):
        with pytest.raises(ValueError):
            geometry.compute_budget(tryboot_profile, -1, 0)


class TestPlanPartitions:
    """Tests for plan_partitions() layout."""

    def test_standard_scenario(self, standard_plan):
        """Test 200 MiB boot / 1.8 GiB root content without a try-boot partition."""
        assert standard_plan.numbers == [1, 2, 3, 5, 6, 7]
        boot = standard_plan.by_role(PartitionRole.BOOT_PRIMARY)
        root = standard_plan.by_role(PartitionRole.ROOT_PRIMARY)
        assert boot.size_bytes == 264 * MIB
        assert root.size_bytes == 2500 * MIB
        assert boot.start == ALIGNMENT_SECTORS
        assert standard_plan.by_role(PartitionRole.EXTENDED).number == 3
        assert not standard_plan.has_role(PartitionRole.TRYBOOT)
        assert_plan_invariants(standard_plan)

    def test_tryboot_layout(self, tryboot_plan):
        assert tryboot_plan.numbers == [1, 2, 3, 4, 5, 6, 7]
        tryboot = tryboot_plan.by_role(PartitionRole.TRYBOOT)
        assert tryboot.number == 1
        assert tryboot.size_bytes == 16 * MIB
        assert tryboot.filesystem is FilesystemKind.FAT16
        assert tryboot.label == "TRYBOOT"
        assert tryboot_plan.by_role(PartitionRole.BOOT_PRIMARY).number == 2
        assert_plan_invariants(tryboot_plan)

    def test_labels(self, tryboot_plan):
        labels = {spec.role: spec.label for spec in tryboot_plan}
        assert labels[PartitionRole.BOOT_PRIMARY] == "BOOTFS"
        assert labels[PartitionRole.ROOT_PRIMARY] == "ROOTFS"
        assert labels[PartitionRole.BOOT_SECONDARY] == "BOOT2FS"
        assert labels[PartitionRole.ROOT_SECONDARY] == "ROOTFS2"
        assert labels[PartitionRole.HOME] == "HOME"
        assert labels[PartitionRole.EXTENDED] is None

    def test_filesystem_kinds(self, standard_plan):
        assert standard_plan.by_role(PartitionRole.BOOT_PRIMARY).filesystem is FilesystemKind.FAT32
        assert standard_plan.by_role(PartitionRole.ROOT_SECONDARY).filesystem is FilesystemKind.EXT4
        assert standard_plan.by_role(PartitionRole.HOME).filesystem is FilesystemKind.EXT4
        assert standard_plan.extended.filesystem is FilesystemKind.NONE

    def test_slots_are_symmetric(self, tryboot_plan):
        assert (
            tryboot_plan.by_role(PartitionRole.BOOT_PRIMARY).size_sectors
            == tryboot_plan.by_role(PartitionRole.BOOT_SECONDARY).size_sectors
        )
        assert (
            tryboot_plan.by_role(PartitionRole.ROOT_PRIMARY).size_sectors
            == tryboot_plan.by_role(PartitionRole.ROOT_SECONDARY).size_sectors
        )

    def test_extended_spans_to_last_sector(self, standard_plan):
        assert standard_plan.extended.end == standard_plan.last_sector

    def test_logicals_preceded_by_alignment_gap(self, standard_plan):
        previous_end = standard_plan.extended.start - 1
        for spec in standard_plan.logicals:
            assert spec.start - (previous_end + 1) >= ALIGNMENT_SECTORS
            previous_end = spec.end

    def test_home_gets_minimum_size(self, standard_plan):
        assert standard_plan.by_role(PartitionRole.HOME).size_bytes == 8 * MIB

    def test_home_leaves_trailing_slack(self, tryboot_plan):
        home = tryboot_plan.by_role(PartitionRole.HOME)
        assert home.end <= tryboot_plan.last_sector - ALIGNMENT_SECTORS

    def test_larger_device_keeps_nominal_home(self, tryboot_profile):
        budget = geometry.compute_budget(tryboot_profile, 0, 0)
        plan = geometry.plan_partitions(tryboot_profile, budget, 8 * 1024 * MIB)
        assert plan.by_role(PartitionRole.HOME).size_bytes == 8 * MIB
        assert plan.extended.end == plan.last_sector
        assert_plan_invariants(plan)

    @pytest.mark.parametrize("boot_mib", [0, 50, 200, 400, 1024])
    def test_invariants_hold_across_boot_sizes(self, tryboot_profile, standard_profile, boot_mib):
        for profile in (tryboot_profile, standard_profile):
            plan = geometry.build_plan(profile, boot_mib * MIB + 123, 1000 * MIB)
            assert_plan_invariants(plan)


class TestHomeClamp:
    """Tests for home clamping and capacity failures."""

    def test_home_clamped_when_device_slightly_short(self, standard_profile):
        """Test home shrinks to fit when the device is 4 MiB short."""
        budget = geometry.compute_budget(standard_profile, 200 * MIB, 0)
        device_bytes = budget.required_bytes - 4 * MIB

        plan = geometry.plan_partitions(standard_profile, budget, device_bytes)

        home = plan.by_role(PartitionRole.HOME)
        assert home.size_bytes == 5 * MIB
        assert_plan_invariants(plan)

    def test_capacity_error_when_home_cannot_fit(self, standard_profile):
        budget = geometry.compute_budget(standard_profile, 200 * MIB, 0)
        device_bytes = budget.required_bytes - 9 * MIB

        with pytest.raises(CapacityError):
            geometry.plan_partitions(standard_profile, budget, device_bytes)

    def test_capacity_error_when_no_room_for_extended(self, tryboot_profile):
        budget = geometry.compute_budget(tryboot_profile, 0, 0)
        with pytest.raises(CapacityError):
            geometry.plan_partitions(tryboot_profile, budget, 1024 * MIB)


class TestValidatePlan:
    """Tests for validate_plan() rejecting broken layouts."""

    def _replace(self, plan, role, **changes):
        specs = []
        for spec in plan:
            if spec.role is role:
                values = {**spec.__dict__, **changes}
                spec = PartitionSpec(**values)
            specs.append(spec)
        return PartitionPlan(plan.profile, plan.budget, plan.device_bytes, tuple(specs))

    def test_valid_plan_passes(self, standard_plan):
        geometry.validate_plan(standard_plan)

    def test_misaligned_start_rejected(self, standard_plan):
        home = standard_plan.by_role(PartitionRole.HOME)
        broken = self._replace(standard_plan, PartitionRole.HOME, start=home.start + 1)
        with pytest.raises(PartitionError):
            geometry.validate_plan(broken)

    def test_asymmetric_slots_rejected(self, standard_plan):
        boot_b = standard_plan.by_role(PartitionRole.BOOT_SECONDARY)
        broken = self._replace(
            standard_plan, PartitionRole.BOOT_SECONDARY, end=boot_b.end - ALIGNMENT_SECTORS
        )
        with pytest.raises(PartitionError):
            geometry.validate_plan(broken)

    def test_overlapping_primaries_rejected(self, standard_plan):
        root = standard_plan.by_role(PartitionRole.ROOT_PRIMARY)
        broken = self._replace(standard_plan, PartitionRole.BOOT_PRIMARY, end=root.start)
        with pytest.raises(PartitionError):
            geometry.validate_plan(broken)

    def test_logical_past_last_sector_rejected(self, standard_plan):
        broken = self._replace(
            standard_plan, PartitionRole.HOME, end=standard_plan.last_sector
        )
        with pytest.raises(CapacityError):
            geometry.validate_plan(broken)

    def test_logical_outside_extended_rejected(self, standard_plan):
        extended = standard_plan.extended
        broken = self._replace(
            standard_plan,
            PartitionRole.EXTENDED,
            end=standard_plan.by_role(PartitionRole.ROOT_SECONDARY).end,
        )
        assert broken.extended.end < extended.end
        with pytest.raises(PartitionError):
            geometry.validate_plan(broken)


def test_partition_sizes_in_sectors(standard_plan):
    for spec in standard_plan:
        assert spec.size_bytes == spec.size_sectors * SECTOR_SIZE
    assert standard_plan.by_role(PartitionRole.BOOT_PRIMARY).style is PartitionStyle.PRIMARY
