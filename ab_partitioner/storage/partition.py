"""Partition table writing for A/B images.

Applies a PartitionPlan to a block device with parted, asks the kernel to
re-read the table, then waits (bounded) for the logical partition nodes to
appear, because their creation is asynchronous to the table write.

Implementation Details:
    - Legacy MBR ("msdos") label
    - One mkpart per plan entry, in plan order, in sector units
    - Boot flag on the primary boot partition when the profile asks for it
    - Up to N polls of lsblk, a fixed interval apart, for the expected nodes
"""

from __future__ import annotations

import os
import subprocess
import time
from typing import Callable

from ab_partitioner.domain.models import (
    DeviceMapping,
    PartitionPlan,
    PartitionRole,
    PartitionSpec,
)
from ab_partitioner.logging import LoggerFactory

from .commands import command_error_message, run_command
from .exceptions import DeviceNodeTimeoutError, PartitionOperationError
from .image import list_partition_nodes


log = LoggerFactory.for_partition()

DEFAULT_WAIT_ATTEMPTS = 10
DEFAULT_WAIT_INTERVAL = 0.5


def _mkpart_command(target: str, spec: PartitionSpec) -> list[str]:
    command = ["parted", "--script", target, "unit", "s", "mkpart", spec.style.value]
    hint = spec.filesystem.parted_hint
    if hint:
        command.append(hint)
    command.extend([str(spec.start), str(spec.end)])
    return command


def build_parted_commands(plan: PartitionPlan, target: str) -> list[list[str]]:
    """Every parted invocation needed to write plan to target, in order."""
    commands = [["parted", "--script", target, "mklabel", "msdos"]]
    commands.extend(_mkpart_command(target, spec) for spec in plan)
    if plan.profile.boot_flag:
        boot = plan.by_role(PartitionRole.BOOT_PRIMARY)
        commands.append(
            ["parted", "--script", target, "set", str(boot.number), "boot", "on"]
        )
    return commands


def write_partition_table(plan: PartitionPlan, target: str) -> None:
    """Write the plan's partition table to target.

    Raises:
        PartitionOperationError: If parted rejects any operation
    """
    log.info(f"Writing partition table to {target} ...")
    for command in build_parted_commands(plan, target):
        try:
            run_command(command)
        except subprocess.CalledProcessError as error:
            raise PartitionOperationError(
                f"parted failed ({' '.join(command[3:])}): {command_error_message(error)}",
                device=target,
            ) from error


def rescan_partitions(device: str) -> None:
    """Ask the kernel to re-read the partition table of device."""
    run_command(["sync"], check=False, log_command=False)
    result = run_command(["partprobe", device], check=False)
    if result.returncode != 0:
        log.warning(
            f"partprobe {device} returned {result.returncode}; waiting for nodes anyway"
        )


def wait_for_partition_nodes(
    device: str,
    numbers: list[int],
    attempts: int = DEFAULT_WAIT_ATTEMPTS,
    interval: float = DEFAULT_WAIT_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[int, str]:
    """Poll until every expected partition node of device exists.

    Args:
        device: Parent block device (e.g., /dev/loop3)
        numbers: Partition numbers that must appear
        attempts: Maximum number of polls
        interval: Seconds between polls

    Returns:
        Mapping of partition number to device node for the expected numbers

    Raises:
        DeviceNodeTimeoutError: If any node is still missing after all attempts
    """
    missing = list(numbers)
    for attempt in range(1, attempts + 1):
        try:
            nodes = list_partition_nodes(device)
        except subprocess.CalledProcessError as error:
            log.debug(f"lsblk failed for {device}: {command_error_message(error)}")
            nodes = {}
        missing = [
            number
            for number in numbers
            if number not in nodes or not os.path.exists(nodes[number])
        ]
        if not missing:
            log.debug(f"All partition nodes for {device} present (attempt {attempt})")
            return {number: nodes[number] for number in numbers}
        log.debug(
            f"Waiting for partition nodes {missing} on {device} "
            f"(attempt {attempt}/{attempts})"
        )
        if attempt < attempts:
            sleep(interval)
    raise DeviceNodeTimeoutError(device, missing, attempts)


def build_device_mapping(
    plan: PartitionPlan, device: str, nodes: dict[int, str]
) -> DeviceMapping:
    return DeviceMapping(
        device=device,
        nodes={spec.role: nodes[spec.number] for spec in plan},
    )


def apply_plan(
    plan: PartitionPlan,
    device: str,
    attempts: int = DEFAULT_WAIT_ATTEMPTS,
    interval: float = DEFAULT_WAIT_INTERVAL,
) -> DeviceMapping:
    """Write plan to device and map every role to its device node."""
    write_partition_table(plan, device)
    rescan_partitions(device)
    nodes = wait_for_partition_nodes(device, plan.numbers, attempts, interval)
    mapping = build_device_mapping(plan, device, nodes)
    for spec in plan:
        log.debug(f"{spec.role.value}: {mapping.node_for(spec.role)}")
    return mapping


def read_partuuid(node: str) -> str:
    """Return the PARTUUID of a partition node (e.g., 1a2b3c4d-03).

    Raises:
        PartitionOperationError: If blkid cannot report one
    """
    try:
        result = run_command(["blkid", "-s", "PARTUUID", "-o", "value", node])
    except subprocess.CalledProcessError as error:
        raise PartitionOperationError(
            f"blkid could not read PARTUUID of {node}: {command_error_message(error)}",
            device=node,
        ) from error
    partuuid = result.stdout.strip()
    if not partuuid:
        raise PartitionOperationError(f"{node} has no PARTUUID", device=node)
    return partuuid
