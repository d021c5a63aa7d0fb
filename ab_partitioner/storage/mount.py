"""Mount helpers for image partitions with safe subprocess handling.

All commands are run with argument lists (never a shell), and device paths
are validated before use.

Functions:
    - is_mountpoint(): Check /proc/mounts for an active mountpoint
    - has_mounts_below(): Check whether anything is mounted under a directory
    - mount_partition(): Mount a partition node at a directory
    - unmount_path(): Unmount, escalating to a lazy unmount when busy
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

from ab_partitioner.logging import LoggerFactory

from .commands import command_error_message, run_command
from .exceptions import MountOperationError, UnmountFailedError


log = LoggerFactory.for_resources()

_UNSAFE_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")


def _active_mountpoints() -> list[str] | None:
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            return [
                parts[1]
                for parts in (line.split() for line in mounts_file)
                if len(parts) > 1
            ]
    except FileNotFoundError:
        return None


def is_mountpoint(path: Path | str) -> bool:
    """Check if a directory is currently a mountpoint."""
    target = os.path.realpath(str(path))
    mountpoints = _active_mountpoints()
    if mountpoints is None:
        return os.path.ismount(target)
    return target in mountpoints


def has_mounts_below(path: Path | str) -> bool:
    """Check whether path or anything beneath it is mounted."""
    base = os.path.realpath(str(path))
    mountpoints = _active_mountpoints()
    if mountpoints is None:
        return os.path.ismount(base)
    prefix = base.rstrip("/") + "/"
    return any(mp == base or mp.startswith(prefix) for mp in mountpoints)


def _validate_device_path(device: str) -> None:
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid partition path: {device}")
    if any(char in device for char in _UNSAFE_CHARS):
        raise ValueError(f"Partition path contains invalid characters: {device}")


def mount_partition(device: str, mountpoint: Path, fstype: str | None = None) -> None:
    """Mount device at mountpoint, creating the directory first.

    Args:
        device: Device node (e.g., '/dev/loop3p2')
        mountpoint: Target directory
        fstype: Optional filesystem type passed to mount -t

    Raises:
        ValueError: If the device path is invalid
        MountOperationError: If mount fails
    """
    _validate_device_path(device)
    mountpoint.mkdir(parents=True, exist_ok=True)

    command = ["mount"]
    if fstype:
        command.extend(["-t", fstype])
    command.extend([device, str(mountpoint)])
    try:
        run_command(command)
    except subprocess.CalledProcessError as error:
        raise MountOperationError(
            device, str(mountpoint), command_error_message(error)
        ) from error
    log.debug(f"Mounted {device} at {mountpoint}")


def unmount_path(mountpoint: Path | str) -> bool:
    """Unmount mountpoint, falling back to a lazy unmount if it is busy.

    Unmounting something that is not mounted is a no-op.

    Returns:
        True if something was unmounted, False if nothing was mounted

    Raises:
        UnmountFailedError: If the mountpoint is still active afterwards
    """
    if not is_mountpoint(mountpoint):
        return False

    result = run_command(["umount", str(mountpoint)], check=False)
    if result.returncode == 0 or not is_mountpoint(mountpoint):
        log.debug(f"Unmounted {mountpoint}")
        return True

    log.warning(f"{mountpoint} still busy, trying lazy unmount ...")
    lazy = run_command(["umount", "-l", str(mountpoint)], check=False)
    if lazy.returncode != 0 and is_mountpoint(mountpoint):
        raise UnmountFailedError(str(mountpoint), (lazy.stderr or "").strip())
    return True
