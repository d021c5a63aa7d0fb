"""Domain model for A/B image conversion.

Type-safe value objects shared by the pipeline stages. The partition plan is
produced once by the geometry calculator and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Mapping


SECTOR_SIZE = 512
MIB = 1024 * 1024
ALIGNMENT_BYTES = MIB
ALIGNMENT_SECTORS = ALIGNMENT_BYTES // SECTOR_SIZE

# Boot partitions at or above this size are formatted FAT32, smaller ones FAT16.
FAT32_THRESHOLD_BYTES = 134742016

# First partition number the kernel gives to logical partitions.
FIRST_LOGICAL_NUMBER = 5


# ==============================================================================
# Layout Variants
# ==============================================================================


class LayoutVariant(Enum):
    """Which flavour of A/B layout to build."""

    TRYBOOT = "tryboot"  # Dedicated try-boot partition before boot A
    STANDARD = "standard"  # No try-boot partition, boot flag on boot A


class RootIdentity(Enum):
    """How command lines and the mount table refer to partitions."""

    LABEL = "label"
    PARTUUID = "partuuid"


@dataclass(frozen=True)
class LayoutProfile:
    """Size constants and behaviour switches for one layout variant."""

    variant: LayoutVariant
    tryboot_bytes: int
    root_target_bytes: int
    identity: RootIdentity
    boot_flag: bool
    write_digest: bool
    boot_margin_bytes: int = 64 * MIB
    boot_min_bytes: int = 256 * MIB
    home_min_bytes: int = 8 * MIB
    buffer_bytes: int = 32 * MIB

    @property
    def has_tryboot(self) -> bool:
        return self.tryboot_bytes > 0


PROFILES: dict[LayoutVariant, LayoutProfile] = {
    LayoutVariant.TRYBOOT: LayoutProfile(
        variant=LayoutVariant.TRYBOOT,
        tryboot_bytes=16 * MIB,
        root_target_bytes=2900 * MIB,
        identity=RootIdentity.LABEL,
        boot_flag=False,
        write_digest=False,
    ),
    LayoutVariant.STANDARD: LayoutProfile(
        variant=LayoutVariant.STANDARD,
        tryboot_bytes=0,
        root_target_bytes=2500 * MIB,
        identity=RootIdentity.PARTUUID,
        boot_flag=True,
        write_digest=True,
    ),
}


def get_profile(variant: LayoutVariant | str) -> LayoutProfile:
    """Look up the profile for a variant name or enum member.

    Raises:
        ValueError: If the variant name is unknown
    """
    if not isinstance(variant, LayoutVariant):
        variant = LayoutVariant(str(variant).lower())
    return PROFILES[variant]


# ==============================================================================
# Partition Domain
# ==============================================================================


class PartitionRole(Enum):
    """What a partition is used for in the A/B layout."""

    TRYBOOT = "tryboot"
    BOOT_PRIMARY = "boot-primary"
    ROOT_PRIMARY = "root-primary"
    EXTENDED = "extended-container"
    BOOT_SECONDARY = "boot-secondary"
    ROOT_SECONDARY = "root-secondary"
    HOME = "home"


class PartitionStyle(Enum):
    """Legacy partition table entry style."""

    PRIMARY = "primary"
    EXTENDED = "extended"
    LOGICAL = "logical"


class FilesystemKind(Enum):
    """Filesystem created on a partition."""

    FAT16 = "fat16"
    FAT32 = "fat32"
    EXT4 = "ext4"
    NONE = "none"  # Extended container

    @property
    def is_fat(self) -> bool:
        return self in (FilesystemKind.FAT16, FilesystemKind.FAT32)

    @property
    def fat_bits(self) -> int | None:
        return {FilesystemKind.FAT16: 16, FilesystemKind.FAT32: 32}.get(self)

    @property
    def mount_type(self) -> str | None:
        """Filesystem type name understood by mount(8)."""
        if self.is_fat:
            return "vfat"
        if self is FilesystemKind.EXT4:
            return "ext4"
        return None

    @property
    def parted_hint(self) -> str | None:
        """Filesystem type hint passed to parted mkpart."""
        if self is FilesystemKind.NONE:
            return None
        return self.value


ROLE_LABELS: dict[PartitionRole, str] = {
    PartitionRole.TRYBOOT: "TRYBOOT",
    PartitionRole.BOOT_PRIMARY: "BOOTFS",
    PartitionRole.ROOT_PRIMARY: "ROOTFS",
    PartitionRole.BOOT_SECONDARY: "BOOT2FS",
    PartitionRole.ROOT_SECONDARY: "ROOTFS2",
    PartitionRole.HOME: "HOME",
}

# Where each mounted region lives inside the new root filesystem.
ROLE_MOUNTPOINTS: dict[PartitionRole, str] = {
    PartitionRole.ROOT_PRIMARY: "/",
    PartitionRole.BOOT_PRIMARY: "/boot",
    PartitionRole.TRYBOOT: "/tryboot",
    PartitionRole.HOME: "/home",
}


def fat_kind_for_size(size_bytes: int) -> FilesystemKind:
    """Pick FAT16 for small partitions and FAT32 above the threshold."""
    if size_bytes < FAT32_THRESHOLD_BYTES:
        return FilesystemKind.FAT16
    return FilesystemKind.FAT32


@dataclass(frozen=True)
class PartitionSpec:
    """One entry of the partition plan. Sector ranges are inclusive."""

    role: PartitionRole
    style: PartitionStyle
    filesystem: FilesystemKind
    number: int
    start: int
    end: int
    label: str | None = None

    @property
    def size_sectors(self) -> int:
        return self.end - self.start + 1

    @property
    def size_bytes(self) -> int:
        return self.size_sectors * SECTOR_SIZE

    @property
    def size_mib(self) -> float:
        return self.size_bytes / MIB

    def overlaps(self, other: PartitionSpec) -> bool:
        return self.start <= other.end and other.start <= self.end

    def contains(self, other: PartitionSpec) -> bool:
        return self.start <= other.start and other.end <= self.end

    def describe(self) -> str:
        return (
            f"{self.number}: {self.role.value:<18} {self.style.value:<8} "
            f"{self.start} -> {self.end} ({self.size_sectors} sectors, "
            f"{self.size_mib:.0f} MiB)"
        )


@dataclass(frozen=True)
class SizeBudget:
    """Byte sizes feeding the plan, derived from measurements and a profile."""

    original_boot_bytes: int
    original_root_bytes: int
    tryboot_bytes: int
    boot_bytes: int
    root_bytes: int
    home_bytes: int
    buffer_bytes: int

    @property
    def partitions_bytes(self) -> int:
        """Sum of every partition size, both slots included."""
        return (
            self.tryboot_bytes
            + 2 * self.boot_bytes
            + 2 * self.root_bytes
            + self.home_bytes
        )

    @property
    def required_bytes(self) -> int:
        """Leading alignment gap + partitions + buffer, aligned up."""
        total = ALIGNMENT_BYTES + self.partitions_bytes + self.buffer_bytes
        return -(-total // ALIGNMENT_BYTES) * ALIGNMENT_BYTES


@dataclass(frozen=True)
class PartitionPlan:
    """Ordered, immutable partition layout for the destination image."""

    profile: LayoutProfile
    budget: SizeBudget
    device_bytes: int
    partitions: tuple[PartitionSpec, ...]

    def __iter__(self) -> Iterator[PartitionSpec]:
        return iter(self.partitions)

    def __len__(self) -> int:
        return len(self.partitions)

    @property
    def last_sector(self) -> int:
        """Last addressable sector of the destination device."""
        return self.device_bytes // SECTOR_SIZE - 1

    def get(self, role: PartitionRole) -> PartitionSpec | None:
        for spec in self.partitions:
            if spec.role is role:
                return spec
        return None

    def by_role(self, role: PartitionRole) -> PartitionSpec:
        spec = self.get(role)
        if spec is None:
            raise KeyError(f"Plan has no {role.value} partition")
        return spec

    def has_role(self, role: PartitionRole) -> bool:
        return self.get(role) is not None

    @property
    def primaries(self) -> list[PartitionSpec]:
        return [spec for spec in self.partitions if spec.style is not PartitionStyle.LOGICAL]

    @property
    def logicals(self) -> list[PartitionSpec]:
        return [spec for spec in self.partitions if spec.style is PartitionStyle.LOGICAL]

    @property
    def extended(self) -> PartitionSpec:
        return self.by_role(PartitionRole.EXTENDED)

    @property
    def formattable(self) -> list[PartitionSpec]:
        return [
            spec for spec in self.partitions if spec.filesystem is not FilesystemKind.NONE
        ]

    @property
    def numbers(self) -> list[int]:
        return [spec.number for spec in self.partitions]


# ==============================================================================
# Device Mapping
# ==============================================================================


@dataclass(frozen=True)
class DeviceMapping:
    """Concrete block-device node for every planned partition."""

    device: str  # e.g., "/dev/loop3"
    nodes: Mapping[PartitionRole, str] = field(default_factory=dict)

    def node_for(self, role: PartitionRole) -> str:
        try:
            return self.nodes[role]
        except KeyError:
            raise KeyError(f"No device node mapped for {role.value}") from None

    def __contains__(self, role: object) -> bool:
        return role in self.nodes


# ==============================================================================
# Boot Slots
# ==============================================================================


@dataclass(frozen=True)
class BootSlotConfig:
    """Command line settings for one boot slot."""

    slot: str  # "A" or "B"
    root_selector: str  # e.g., "LABEL=ROOTFS" or "PARTUUID=1a2b3c4d-03"
    cmdline_filename: str

    @property
    def root_parameter(self) -> str:
        return f"root={self.root_selector}"
