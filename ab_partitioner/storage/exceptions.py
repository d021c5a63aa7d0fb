"""Custom exceptions for A/B image conversion.

This module defines a hierarchy of exceptions for the conversion pipeline so
that callers can tell usage problems, capacity problems and environment
failures apart, even though every failure ends the run with the same exit code.

Exception Hierarchy:
    StorageError (base)
        ├── UsageError
        │   ├── MissingToolError
        │   ├── PrivilegeError
        │   ├── InputImageNotFoundError
        │   └── SourceDestinationSameError
        ├── CapacityError
        │   └── InsufficientSpaceError
        ├── DeviceError
        │   ├── ImageAllocationError
        │   ├── LoopDeviceError
        │   └── DeviceNodeTimeoutError
        ├── PartitionError
        │   └── PartitionOperationError
        ├── FormatError
        │   └── FormatOperationError
        ├── MountError
        │   ├── MountOperationError
        │   └── UnmountFailedError
        ├── MigrationError
        │   └── CopyOperationError
        ├── VerificationError
        │   └── FinalVerificationError
        └── ConversionInterrupted

Usage:
    from ab_partitioner.storage.exceptions import CapacityError

    if home_end <= home_start:
        raise CapacityError("Not enough space for even a minimal home partition")
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all conversion operations."""


class UsageError(StorageError):
    """Invocation problem detected before anything is touched."""


class MissingToolError(UsageError):
    """A required external tool is not installed."""

    def __init__(self, tools: list[str]):
        self.tools = list(tools)
        super().__init__(
            "Required tool(s) not found: "
            f"{', '.join(self.tools)}. Please install and try again."
        )


class PrivilegeError(UsageError):
    """The process is not running with administrative privilege."""

    def __init__(self):
        super().__init__("Root privileges are required (run with sudo)")


class InputImageNotFoundError(UsageError):
    """The input image path does not exist or is not a file."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Input image not found: {path}")


class SourceDestinationSameError(UsageError):
    """Input and output image paths refer to the same file."""

    def __init__(self, source_name: str, destination_name: str):
        self.source_name = source_name
        self.destination_name = destination_name
        super().__init__(
            f"Input and output cannot be the same file: "
            f"{source_name} == {destination_name}"
        )


class CapacityError(StorageError):
    """The planned layout does not fit the available space."""


class InsufficientSpaceError(CapacityError):
    """The host filesystem cannot hold the destination image."""

    def __init__(self, path: str, required_bytes: int, available_bytes: int):
        self.path = path
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Not enough free space for {path}: need {required_bytes} bytes, "
            f"{available_bytes} bytes available"
        )


class DeviceError(StorageError):
    """Base exception for block-device errors."""


class ImageAllocationError(DeviceError):
    """The destination image file could not be created or grown."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        msg = f"Failed to create destination image {path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class LoopDeviceError(DeviceError):
    """Attaching an image to a loop device failed."""

    def __init__(self, image_path: str, reason: str = ""):
        self.image_path = image_path
        self.reason = reason
        msg = f"Failed to attach loop device for {image_path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DeviceNodeTimeoutError(DeviceError):
    """Expected partition device nodes did not appear within the retry budget."""

    def __init__(self, device: str, missing: list[int], attempts: int):
        self.device = device
        self.missing = list(missing)
        self.attempts = attempts
        numbers = ", ".join(str(number) for number in self.missing)
        super().__init__(
            f"Partition node(s) {numbers} for {device} did not appear "
            f"after {attempts} attempts"
        )


class PartitionError(StorageError):
    """Base exception for partition table operations."""


class PartitionOperationError(PartitionError):
    """The partition table editor rejected an operation."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class FormatError(StorageError):
    """Base exception for format operations."""


class FormatOperationError(FormatError):
    """Generic format operation failure."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class MountError(StorageError):
    """Base exception for mount-related errors."""


class MountOperationError(MountError):
    """Mounting a partition failed."""

    def __init__(self, device: str, mountpoint: str, reason: str = ""):
        self.device = device
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to mount {device} at {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """A mountpoint stayed busy even after a lazy unmount."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MigrationError(StorageError):
    """Base exception for content migration."""


class CopyOperationError(MigrationError):
    """The tree-copy tool failed."""

    def __init__(self, message: str, source: str | None = None, destination: str | None = None):
        self.source = source
        self.destination = destination
        super().__init__(message)


class VerificationError(StorageError):
    """Base exception for output verification."""


class FinalVerificationError(VerificationError):
    """The produced image failed its final integrity checks."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Final verification failed: " + "; ".join(self.problems))


class ConversionInterrupted(StorageError):
    """The run was stopped by an external signal."""

    def __init__(self, signal_name: str):
        self.signal_name = signal_name
        super().__init__(f"Conversion interrupted by {signal_name}")
