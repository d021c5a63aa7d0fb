"""Domain models for A/B image conversion.

This package contains the immutable value objects passed between pipeline
stages: the partition plan, its size budget, and device/slot mappings.
"""

from __future__ import annotations

from .models import (
    BootSlotConfig,
    DeviceMapping,
    FilesystemKind,
    LayoutProfile,
    LayoutVariant,
    PartitionPlan,
    PartitionRole,
    PartitionSpec,
    PartitionStyle,
    RootIdentity,
    SizeBudget,
    get_profile,
)


__all__ = [
    "BootSlotConfig",
    "DeviceMapping",
    "FilesystemKind",
    "LayoutProfile",
    "LayoutVariant",
    "PartitionPlan",
    "PartitionRole",
    "PartitionSpec",
    "PartitionStyle",
    "RootIdentity",
    "SizeBudget",
    "get_profile",
]
