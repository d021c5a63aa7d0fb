"""Boot-time configuration for both slots of the new image.

Writes, inside the migrated slot A filesystems:
    - boot/cmdline.txt with root= pointing at the slot A root partition
      (original kept as cmdline.txt.bak)
    - boot/<secondary cmdline> with root= pointing at the slot B root
    - autoboot.txt selecting slot A (on the try-boot partition when there is
      one, otherwise on boot A together with tryboot.txt for a one-time
      trial boot of slot B)
    - etc/fstab listing every mounted region by LABEL= or PARTUUID=
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Callable

from ab_partitioner.domain.models import (
    ROLE_MOUNTPOINTS,
    BootSlotConfig,
    DeviceMapping,
    FilesystemKind,
    PartitionPlan,
    PartitionRole,
    RootIdentity,
)
from ab_partitioner.logging import LoggerFactory

from .partition import read_partuuid


log = LoggerFactory.for_boot()

CMDLINE_FILENAME = "cmdline.txt"
AUTOBOOT_FILENAME = "autoboot.txt"
TRYBOOT_FILENAME = "tryboot.txt"
ROOT_PARAMETER = re.compile(r"root=\S*")

# Mount table order matches mount precedence.
FSTAB_ROLES = (
    PartitionRole.ROOT_PRIMARY,
    PartitionRole.BOOT_PRIMARY,
    PartitionRole.TRYBOOT,
    PartitionRole.HOME,
)
ROOTFS_OPTIONS = "defaults,noatime"


PartuuidReader = Callable[[str], str]


def partition_selectors(
    plan: PartitionPlan,
    mapping: DeviceMapping,
    roles: tuple[PartitionRole, ...] | list[PartitionRole],
    partuuid_reader: PartuuidReader = read_partuuid,
) -> dict[PartitionRole, str]:
    """Stable identity (LABEL=... or PARTUUID=...) for each role present in plan."""
    selectors: dict[PartitionRole, str] = {}
    for role in roles:
        spec = plan.get(role)
        if spec is None:
            continue
        if plan.profile.identity is RootIdentity.PARTUUID:
            selectors[role] = f"PARTUUID={partuuid_reader(mapping.node_for(role))}"
        else:
            selectors[role] = f"LABEL={spec.label}"
    return selectors


def build_slot_configs(
    selectors: dict[PartitionRole, str], secondary_cmdline: str
) -> tuple[BootSlotConfig, BootSlotConfig]:
    slot_a = BootSlotConfig(
        slot="A",
        root_selector=selectors[PartitionRole.ROOT_PRIMARY],
        cmdline_filename=CMDLINE_FILENAME,
    )
    slot_b = BootSlotConfig(
        slot="B",
        root_selector=selectors[PartitionRole.ROOT_SECONDARY],
        cmdline_filename=secondary_cmdline,
    )
    return slot_a, slot_b


def rewrite_root_parameter(cmdline: str, root_selector: str) -> str:
    """Replace every root= token of a kernel command line."""
    return ROOT_PARAMETER.sub(lambda _match: f"root={root_selector}", cmdline)


def update_cmdlines(
    boot_dir: Path, slot_a: BootSlotConfig, slot_b: BootSlotConfig
) -> bool:
    """Rewrite the primary command line and derive the secondary one.

    Returns:
        False if boot_dir has no cmdline.txt to rewrite
    """
    primary = boot_dir / slot_a.cmdline_filename
    if not primary.is_file():
        log.error(f"{slot_a.cmdline_filename} not found in boot directory!")
        return False

    log.info(f"Updating root parameter in {slot_a.cmdline_filename} ...")
    shutil.copy2(primary, primary.with_name(primary.name + ".bak"))
    original = primary.read_text(encoding="utf-8")

    primary_text = rewrite_root_parameter(original, slot_a.root_selector)
    primary.write_text(primary_text, encoding="utf-8")
    log.info(f"New {slot_a.cmdline_filename} content: {primary_text.strip()}")

    secondary = boot_dir / slot_b.cmdline_filename
    secondary_text = rewrite_root_parameter(original, slot_b.root_selector)
    secondary.write_text(secondary_text, encoding="utf-8")
    log.info(f"New {slot_b.cmdline_filename} content: {secondary_text.strip()}")
    return True


def render_autoboot(plan: PartitionPlan) -> str:
    """Slot-control descriptor selecting a normal boot of slot A."""
    if plan.profile.has_tryboot:
        return "boot_partition=0\nboot_tryboot=0\n"
    boot = plan.by_role(PartitionRole.BOOT_PRIMARY)
    return f"[all]\nboot_partition={boot.number}\n"


def render_tryboot(plan: PartitionPlan, kernel_image: str, secondary_cmdline: str) -> str:
    """Descriptor for a one-time trial boot of slot B."""
    boot_b = plan.by_role(PartitionRole.BOOT_SECONDARY)
    return (
        "[all]\n"
        f"boot_partition={boot_b.number}\n"
        f"kernel={kernel_image}\n"
        f"cmdline={secondary_cmdline}\n"
    )


def write_slot_descriptors(
    new_root: Path, plan: PartitionPlan, kernel_image: str, secondary_cmdline: str
) -> list[Path]:
    """Write autoboot.txt (and tryboot.txt when there is no try-boot partition)."""
    log.info("Setting up tryboot configuration ...")
    if plan.profile.has_tryboot:
        descriptor_dir = new_root / ROLE_MOUNTPOINTS[PartitionRole.TRYBOOT].lstrip("/")
    else:
        descriptor_dir = new_root / ROLE_MOUNTPOINTS[PartitionRole.BOOT_PRIMARY].lstrip("/")
    descriptor_dir.mkdir(parents=True, exist_ok=True)

    written = [descriptor_dir / AUTOBOOT_FILENAME]
    written[0].write_text(render_autoboot(plan), encoding="utf-8")
    if not plan.profile.has_tryboot:
        tryboot = descriptor_dir / TRYBOOT_FILENAME
        tryboot.write_text(
            render_tryboot(plan, kernel_image, secondary_cmdline), encoding="utf-8"
        )
        written.append(tryboot)
    return written


def render_fstab(plan: PartitionPlan, selectors: dict[PartitionRole, str]) -> str:
    """Mount table for the new layout, one line per mounted region."""
    rows: list[tuple[str, str, str, str, str]] = []
    for role in FSTAB_ROLES:
        spec = plan.get(role)
        if spec is None:
            continue
        fstype = spec.filesystem.mount_type or "auto"
        options = ROOTFS_OPTIONS if spec.filesystem is FilesystemKind.EXT4 else "defaults"
        passno = "1" if role is PartitionRole.ROOT_PRIMARY else "2"
        rows.append((selectors[role], ROLE_MOUNTPOINTS[role], fstype, options, passno))

    widths = [max(len(row[column]) for row in rows) for column in range(4)]
    lines = [
        f"{source:<{widths[0]}}  {mountpoint:<{widths[1]}}  {fstype:<{widths[2]}}  "
        f"{options:<{widths[3]}}  0  {passno}"
        for source, mountpoint, fstype, options, passno in rows
    ]
    return "\n".join(lines) + "\n"


def write_fstab(new_root: Path, plan: PartitionPlan, selectors: dict[PartitionRole, str]) -> Path:
    log.info("Updating fstab for new partition layout ...")
    fstab = new_root / "etc" / "fstab"
    fstab.parent.mkdir(parents=True, exist_ok=True)
    fstab.write_text(render_fstab(plan, selectors), encoding="utf-8")
    return fstab


def configure_boot(
    plan: PartitionPlan,
    mapping: DeviceMapping,
    new_root: Path,
    kernel_image: str,
    secondary_cmdline: str,
    partuuid_reader: PartuuidReader = read_partuuid,
) -> tuple[BootSlotConfig, BootSlotConfig]:
    """Write command lines, slot descriptors and fstab for the new layout."""
    roles = list(FSTAB_ROLES) + [PartitionRole.ROOT_SECONDARY]
    selectors = partition_selectors(plan, mapping, roles, partuuid_reader)
    slot_a, slot_b = build_slot_configs(selectors, secondary_cmdline)

    boot_dir = new_root / ROLE_MOUNTPOINTS[PartitionRole.BOOT_PRIMARY].lstrip("/")
    update_cmdlines(boot_dir, slot_a, slot_b)
    write_slot_descriptors(new_root, plan, kernel_image, secondary_cmdline)
    write_fstab(new_root, plan, selectors)
    return slot_a, slot_b
