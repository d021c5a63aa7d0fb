"""Partition geometry planning for A/B images.

Pure arithmetic: nothing in this module touches a device. Given the size of
the original image's boot and root content and a layout profile, it produces
a sector-accurate, validated PartitionPlan.

Layout (try-boot variant shown; the standard variant drops partition 1 and
renumbers the primaries):

    1MiB gap
    1: TRYBOOT   primary   fat16
    2: BOOTFS    primary   fat16/fat32 (slot A)
    3: ROOTFS    primary   ext4        (slot A)
    4: extended  container to the last sector
       1MiB gap
       5: BOOT2FS  logical fat16/fat32 (slot B)
       1MiB gap
       6: ROOTFS2  logical ext4        (slot B)
       1MiB gap
       7: HOME     logical ext4        (grown on first boot)

Sizing policy:
    - Boot = max(measured boot content + margin, minimum), aligned up.
    - Root = fixed generous target, aligned up. It is deliberately not derived
      from the measured root content so the slot has room for later updates.
    - Slot B mirrors slot A exactly.
    - Home starts at its minimum and is only ever clamped downward.
"""

from __future__ import annotations

from ab_partitioner.domain.models import (
    ALIGNMENT_BYTES,
    ALIGNMENT_SECTORS,
    FIRST_LOGICAL_NUMBER,
    MIB,
    ROLE_LABELS,
    SECTOR_SIZE,
    FilesystemKind,
    LayoutProfile,
    PartitionPlan,
    PartitionRole,
    PartitionSpec,
    PartitionStyle,
    SizeBudget,
    fat_kind_for_size,
)
from ab_partitioner.logging import LoggerFactory
from ab_partitioner.storage.exceptions import CapacityError, PartitionError


log = LoggerFactory.for_geometry()


def align_up(value: int, unit: int) -> int:
    """Round value up to the next multiple of unit (ceiling division)."""
    return -(-value // unit) * unit


def bytes_to_sectors(size_bytes: int) -> int:
    return -(-size_bytes // SECTOR_SIZE)


def compute_budget(
    profile: LayoutProfile,
    original_boot_bytes: int,
    original_root_bytes: int,
) -> SizeBudget:
    """Derive every role size from the measured content and the profile."""
    if original_boot_bytes < 0 or original_root_bytes < 0:
        raise ValueError("Measured content sizes cannot be negative")

    boot_bytes = align_up(
        max(original_boot_bytes + profile.boot_margin_bytes, profile.boot_min_bytes),
        ALIGNMENT_BYTES,
    )
    root_bytes = align_up(profile.root_target_bytes, ALIGNMENT_BYTES)

    return SizeBudget(
        original_boot_bytes=original_boot_bytes,
        original_root_bytes=original_root_bytes,
        tryboot_bytes=align_up(profile.tryboot_bytes, ALIGNMENT_BYTES),
        boot_bytes=boot_bytes,
        root_bytes=root_bytes,
        home_bytes=align_up(profile.home_min_bytes, ALIGNMENT_BYTES),
        buffer_bytes=profile.buffer_bytes,
    )


def _label(role: PartitionRole) -> str | None:
    return ROLE_LABELS.get(role)


def plan_partitions(
    profile: LayoutProfile,
    budget: SizeBudget,
    device_bytes: int | None = None,
) -> PartitionPlan:
    """Lay out primary, extended and logical partitions in sector units.

    Args:
        profile: Layout profile (decides whether a try-boot partition exists)
        budget: Role sizes from compute_budget()
        device_bytes: Destination capacity; defaults to budget.required_bytes

    Returns:
        A validated PartitionPlan

    Raises:
        CapacityError: If the layout cannot fit, even with home clamped down
    """
    if device_bytes is None:
        device_bytes = budget.required_bytes

    last_sector = device_bytes // SECTOR_SIZE - 1
    partitions: list[PartitionSpec] = []
    number = 1
    cursor = ALIGNMENT_SECTORS

    primary_regions: list[tuple[PartitionRole, int, FilesystemKind]] = []
    if profile.has_tryboot:
        primary_regions.append(
            (
                PartitionRole.TRYBOOT,
                budget.tryboot_bytes,
                fat_kind_for_size(budget.tryboot_bytes),
            )
        )
    primary_regions.append(
        (PartitionRole.BOOT_PRIMARY, budget.boot_bytes, fat_kind_for_size(budget.boot_bytes))
    )
    primary_regions.append((PartitionRole.ROOT_PRIMARY, budget.root_bytes, FilesystemKind.EXT4))

    for role, size_bytes, kind in primary_regions:
        start = align_up(cursor, ALIGNMENT_SECTORS)
        end = start + bytes_to_sectors(size_bytes) - 1
        partitions.append(
            PartitionSpec(
                role=role,
                style=PartitionStyle.PRIMARY,
                filesystem=kind,
                number=number,
                start=start,
                end=end,
                label=_label(role),
            )
        )
        number += 1
        cursor = end + 1

    extended_start = align_up(cursor, ALIGNMENT_SECTORS)
    if extended_start >= last_sector:
        raise CapacityError(
            f"Device of {device_bytes} bytes has no room for the extended "
            f"partition (starts at sector {extended_start}, last sector {last_sector})"
        )
    partitions.append(
        PartitionSpec(
            role=PartitionRole.EXTENDED,
            style=PartitionStyle.EXTENDED,
            filesystem=FilesystemKind.NONE,
            number=number,
            start=extended_start,
            end=last_sector,
        )
    )

    logical_number = FIRST_LOGICAL_NUMBER
    cursor = extended_start
    for role, size_bytes, kind in (
        (PartitionRole.BOOT_SECONDARY, budget.boot_bytes, fat_kind_for_size(budget.boot_bytes)),
        (PartitionRole.ROOT_SECONDARY, budget.root_bytes, FilesystemKind.EXT4),
    ):
        # Every logical partition is preceded by one alignment unit for its EBR.
        start = align_up(cursor, ALIGNMENT_SECTORS) + ALIGNMENT_SECTORS
        end = start + bytes_to_sectors(size_bytes) - 1
        partitions.append(
            PartitionSpec(
                role=role,
                style=PartitionStyle.LOGICAL,
                filesystem=kind,
                number=logical_number,
                start=start,
                end=end,
                label=_label(role),
            )
        )
        logical_number += 1
        cursor = end + 1

    home_start = align_up(cursor, ALIGNMENT_SECTORS) + ALIGNMENT_SECTORS
    home_end = _clamp_home_end(budget, device_bytes, home_start, last_sector)
    partitions.append(
        PartitionSpec(
            role=PartitionRole.HOME,
            style=PartitionStyle.LOGICAL,
            filesystem=FilesystemKind.EXT4,
            number=logical_number,
            start=home_start,
            end=home_end,
            label=_label(PartitionRole.HOME),
        )
    )

    plan = PartitionPlan(
        profile=profile,
        budget=budget,
        device_bytes=device_bytes,
        partitions=tuple(partitions),
    )
    validate_plan(plan)
    return plan


def _clamp_home_end(
    budget: SizeBudget, device_bytes: int, home_start: int, last_sector: int
) -> int:
    """Return home's end sector, shrinking it if the nominal size cannot fit.

    Home must leave one alignment unit of trailing slack, and all partitions
    plus the safety buffer must fit in the device. Home may shrink down to a
    single alignment unit before the layout is rejected.
    """
    nominal_end = home_start + bytes_to_sectors(budget.home_bytes) - 1
    slack_end = last_sector - ALIGNMENT_SECTORS

    other_bytes = budget.partitions_bytes - budget.home_bytes
    budget_home_bytes = device_bytes - budget.buffer_bytes - other_bytes
    budget_end = home_start + budget_home_bytes // SECTOR_SIZE - 1

    home_end = min(nominal_end, slack_end, budget_end)
    if home_end < nominal_end:
        log.warning(
            "Adjusting home partition to fit within available space "
            f"(end sector {nominal_end} -> {home_end})"
        )

    home_sectors = home_end - home_start + 1
    if home_sectors < ALIGNMENT_SECTORS:
        raise CapacityError(
            "Not enough space for even a minimal home partition: "
            f"home would span {max(home_sectors, 0)} sectors starting at {home_start}, "
            f"device has {device_bytes} bytes"
        )
    return home_end


def validate_plan(plan: PartitionPlan) -> None:
    """Check every layout invariant before anything destructive happens.

    Raises:
        CapacityError: If the layout does not fit the device
        PartitionError: If an ordering/alignment/overlap invariant is broken
    """
    partitions = list(plan)
    if not partitions:
        raise PartitionError("Partition plan is empty")

    starts = [spec.start for spec in partitions]
    if starts != sorted(starts):
        raise PartitionError("Partition plan entries are not ordered by start sector")

    for spec in partitions:
        if spec.start % ALIGNMENT_SECTORS != 0:
            raise PartitionError(
                f"Partition {spec.number} ({spec.role.value}) start {spec.start} "
                f"is not aligned to {ALIGNMENT_SECTORS} sectors"
            )
        if spec.end < spec.start:
            raise PartitionError(
                f"Partition {spec.number} ({spec.role.value}) ends before it starts"
            )

    for group in (plan.primaries, plan.logicals):
        for previous, current in zip(group, group[1:]):
            if previous.overlaps(current):
                raise PartitionError(
                    f"Partitions {previous.number} and {current.number} overlap"
                )

    extended = plan.extended
    for spec in plan.logicals:
        if not extended.contains(spec):
            raise PartitionError(
                f"Logical partition {spec.number} is outside the extended container"
            )

    for slot_a, slot_b in (
        (PartitionRole.BOOT_PRIMARY, PartitionRole.BOOT_SECONDARY),
        (PartitionRole.ROOT_PRIMARY, PartitionRole.ROOT_SECONDARY),
    ):
        if plan.by_role(slot_a).size_sectors != plan.by_role(slot_b).size_sectors:
            raise PartitionError(
                f"{slot_a.value} and {slot_b.value} sizes differ; slots must be symmetric"
            )

    last_logical = plan.logicals[-1]
    if last_logical.end >= plan.last_sector:
        raise CapacityError(
            "Partition layout exceeds image size: last partition ends at sector "
            f"{last_logical.end}, but image ends at {plan.last_sector}"
        )
    if extended.end > plan.last_sector:
        raise CapacityError(
            f"Extended partition ends at {extended.end}, past the last sector "
            f"{plan.last_sector}"
        )


def build_plan(
    profile: LayoutProfile,
    original_boot_bytes: int,
    original_root_bytes: int,
    device_bytes: int | None = None,
) -> PartitionPlan:
    """Compute the budget, lay out the partitions and log the result."""
    budget = compute_budget(profile, original_boot_bytes, original_root_bytes)
    log.info(f"Original boot size: {original_boot_bytes // MIB} MiB")
    log.info(f"Original root size: {original_root_bytes // MIB} MiB")
    log.info("Calculated partition sizes:")
    if profile.has_tryboot:
        log.info(f"- Tryboot: {budget.tryboot_bytes // MIB} MiB")
    log.info(f"- Boot (A/B): {budget.boot_bytes // MIB} MiB")
    log.info(f"- Root (A/B): {budget.root_bytes // MIB} MiB")
    log.info(f"- Min Home: {budget.home_bytes // MIB} MiB")
    log.info(f"- Buffer: {budget.buffer_bytes // MIB} MiB")
    log.info(f"Required image size: {budget.required_bytes // MIB} MiB")

    plan = plan_partitions(profile, budget, device_bytes)
    for spec in plan:
        log.debug(f"Planned {spec.describe()}")
    return plan
