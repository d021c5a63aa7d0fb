"""Destination image allocation and loop-device handling.

Functions:
    - ensure_free_space(): Check the host has room for the destination copy
    - create_image(): Copy the original image and grow it (sparse) to size
    - attach_loop(): Attach an image with partition scanning
    - detach_loop(): Detach a loop device, tolerating already-detached ones
    - list_partition_nodes(): Partition number -> device node, from lsblk
"""

from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
from pathlib import Path

import psutil

from ab_partitioner.logging import LoggerFactory

from .commands import command_error_message, run_command
from .exceptions import ImageAllocationError, InsufficientSpaceError, LoopDeviceError


log = LoggerFactory.for_image()


def image_size_bytes(path: Path) -> int:
    return path.stat().st_size


def ensure_free_space(output_image: Path, required_bytes: int) -> None:
    """Validate the output directory can hold required_bytes of real data.

    Raises:
        InsufficientSpaceError: If the host filesystem is too full
    """
    directory = output_image.resolve().parent
    try:
        available = psutil.disk_usage(str(directory)).free
    except OSError as error:
        raise ImageAllocationError(str(output_image), str(error)) from error
    if available < required_bytes:
        raise InsufficientSpaceError(str(output_image), required_bytes, available)
    log.debug(
        f"Free space in {directory}: {available} bytes (need {required_bytes})"
    )


def create_image(input_image: Path, output_image: Path, size_bytes: int) -> None:
    """Copy input_image to output_image and extend it to size_bytes.

    The extension is sparse: the file is truncated upwards, not filled.

    Raises:
        ImageAllocationError: If the copy or resize fails
    """
    if output_image.exists():
        log.warning(f"Output file {output_image} already exists. Overwriting.")
        try:
            output_image.unlink()
        except OSError as error:
            raise ImageAllocationError(str(output_image), str(error)) from error

    total_size = image_size_bytes(input_image)
    log.info(f"Copying image ({total_size} bytes) ...")
    try:
        shutil.copyfile(input_image, output_image)
        if size_bytes > total_size:
            log.info(f"Resizing image file to {size_bytes} bytes ...")
            os.truncate(output_image, size_bytes)
    except OSError as error:
        raise ImageAllocationError(str(output_image), str(error)) from error

    actual = image_size_bytes(output_image)
    log.debug(f"Actual image size: {actual // 512} sectors")


def attach_loop(image: Path) -> str:
    """Attach image to the first free loop device with partition scanning.

    Returns:
        Loop device path (e.g., /dev/loop3)

    Raises:
        LoopDeviceError: If losetup fails or reports no device
    """
    try:
        result = run_command(["losetup", "--show", "-P", "-f", str(image)])
    except subprocess.CalledProcessError as error:
        raise LoopDeviceError(str(image), command_error_message(error)) from error
    device = result.stdout.strip()
    if not device.startswith("/dev/"):
        raise LoopDeviceError(str(image), f"unexpected losetup output {device!r}")
    log.debug(f"Attached {image} as {device}")
    return device


def is_loop_attached(device: str) -> bool:
    name = Path(device).name
    return Path(f"/sys/block/{name}/loop/backing_file").exists()


def detach_loop(device: str) -> bool:
    """Detach a loop device.

    Returns:
        True if the device was detached, False if it was not attached

    Raises:
        LoopDeviceError: If the device is attached and stays attached
    """
    if not is_loop_attached(device):
        log.debug(f"{device} is not attached; nothing to detach")
        return False
    result = run_command(["losetup", "-d", device], check=False)
    if result.returncode != 0 and is_loop_attached(device):
        raise LoopDeviceError(device, f"detach failed: {(result.stderr or '').strip()}")
    log.debug(f"Detached {device}")
    return True


def get_partition_number(name: str | None) -> int | None:
    """Extract partition number from a device name (loop0p5 -> 5)."""
    if not name:
        return None
    match = re.search(r"(?:p)?(\d+)$", name)
    if not match:
        return None
    return int(match.group(1))


def list_partition_nodes(device: str) -> dict[int, str]:
    """Return the kernel's current partition nodes for device.

    Returns:
        Mapping of partition number to device node path
    """
    result = run_command(
        ["lsblk", "-J", "-o", "NAME,PATH,TYPE", device], log_output=False
    )
    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError:
        log.warning(f"Could not parse lsblk output for {device}")
        return {}

    nodes: dict[int, str] = {}
    for block in data.get("blockdevices", []) or []:
        for child in block.get("children", []) or []:
            if child.get("type") != "part":
                continue
            name = child.get("name", "")
            number = get_partition_number(name)
            if number is None:
                continue
            nodes[number] = child.get("path") or f"/dev/{name}"
    return nodes
