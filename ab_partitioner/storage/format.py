"""Filesystem creation for every planned partition.

Supported Filesystems:
    fat16:  Small boot partitions (below the FAT32 threshold)
    fat32:  Boot partitions at or above the threshold
    ext4:   Root and home partitions, created without the huge_file feature
            so minimal kernels can mount them

Formatting always forces creation: the destination device was just
partitioned, so any signature left on it is stale.
"""

from __future__ import annotations

import subprocess

from ab_partitioner.domain.models import (
    DeviceMapping,
    FilesystemKind,
    PartitionPlan,
    PartitionSpec,
)
from ab_partitioner.logging import LoggerFactory

from .commands import command_error_message, run_command
from .exceptions import FormatOperationError


log = LoggerFactory.for_format()


def build_format_command(spec: PartitionSpec, node: str) -> list[str]:
    """Build the mkfs command line for one partition.

    Raises:
        ValueError: If the partition has no filesystem (extended container)
    """
    kind = spec.filesystem
    if kind.is_fat:
        command = ["mkfs.vfat", "-F", str(kind.fat_bits)]
        if spec.label:
            command.extend(["-n", spec.label])
        command.append(node)
        return command
    if kind is FilesystemKind.EXT4:
        command = ["mkfs.ext4", "-F"]
        if spec.label:
            command.extend(["-L", spec.label])
        command.extend(["-O", "^huge_file", node])
        return command
    raise ValueError(f"Partition {spec.number} ({spec.role.value}) has no filesystem")


def format_partition(spec: PartitionSpec, node: str) -> None:
    """Create the planned filesystem on node.

    Raises:
        FormatOperationError: If mkfs fails
    """
    command = build_format_command(spec, node)
    log.info(f"Formatting {node} as {spec.filesystem.value} ({spec.label})")
    try:
        run_command(command, log_output=False)
    except (subprocess.CalledProcessError, OSError) as error:
        reason = (
            command_error_message(error)
            if isinstance(error, subprocess.CalledProcessError)
            else str(error)
        )
        raise FormatOperationError(
            f"Failed to format {node} as {spec.filesystem.value}: {reason}",
            device=node,
        ) from error


def format_plan(plan: PartitionPlan, mapping: DeviceMapping) -> None:
    """Format every partition of plan that carries a filesystem."""
    for spec in plan.formattable:
        format_partition(spec, mapping.node_for(spec.role))
