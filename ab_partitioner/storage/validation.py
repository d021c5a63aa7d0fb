"""Pre-flight validation for a conversion run.

Every check here runs before any image, loop device or mount is touched, and
raises a UsageError subclass instead of returning a boolean, so the caller
can report the problem and exit without cleanup work.

Example:
    from ab_partitioner.storage.validation import validate_conversion_request

    try:
        validate_conversion_request(input_image, output_image)
    except UsageError as error:
        # Report and exit non-zero
        ...
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from ab_partitioner.logging import LoggerFactory

from .exceptions import (
    InputImageNotFoundError,
    MissingToolError,
    PrivilegeError,
    SourceDestinationSameError,
)


log = LoggerFactory.for_system()

REQUIRED_TOOLS: tuple[str, ...] = (
    "parted",
    "partprobe",
    "losetup",
    "lsblk",
    "blkid",
    "mkfs.ext4",
    "mkfs.vfat",
    "rsync",
    "cp",
    "du",
    "mount",
    "umount",
    "chown",
)


def validate_required_tools(tools: tuple[str, ...] | list[str] = REQUIRED_TOOLS) -> None:
    """Validate that every external collaborator is installed.

    Raises:
        MissingToolError: Listing every missing tool
    """
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise MissingToolError(missing)


def validate_root_privileges() -> None:
    """Validate that the process runs as root.

    Raises:
        PrivilegeError: If the effective user is not root
    """
    if os.geteuid() != 0:
        raise PrivilegeError()


def validate_input_image(input_image: Path) -> None:
    """Validate that the input image exists and is a regular file.

    Raises:
        InputImageNotFoundError: If it does not
    """
    if not input_image.is_file():
        raise InputImageNotFoundError(str(input_image))


def validate_paths_different(input_image: Path, output_image: Path) -> None:
    """Validate that the output would not overwrite the input.

    Raises:
        SourceDestinationSameError: If both paths resolve to the same file
    """
    if input_image.resolve() == output_image.resolve():
        raise SourceDestinationSameError(str(input_image), str(output_image))


def validate_conversion_request(
    input_image: Path,
    output_image: Path,
    *,
    tools: tuple[str, ...] | list[str] = REQUIRED_TOOLS,
) -> None:
    """Run all pre-flight checks in the order the operator should fix them.

    Raises:
        MissingToolError, PrivilegeError, InputImageNotFoundError,
        SourceDestinationSameError
    """
    validate_required_tools(tools)
    validate_root_privileges()
    validate_input_image(input_image)
    validate_paths_different(input_image, output_image)
    log.debug(f"Pre-flight checks passed for {input_image} -> {output_image}")
