"""Scoped tracking of loop devices, mounts and work directories.

Every resource acquired during a conversion is pushed onto one stack and
released in reverse order exactly once, whatever ends the run: normal
completion, an exception, or SIGINT/SIGTERM/SIGHUP.

Usage:
    from ab_partitioner.storage.resources import ResourceManager

    with ResourceManager() as resources:
        workdir = resources.make_tempdir()
        device = resources.attach(image_path)
        resources.mount(f"{device}p1", workdir / "boot", "vfat")
        ...
    # everything is unmounted and detached here
"""

from __future__ import annotations

import atexit
import shutil
import signal
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from ab_partitioner.logging import LoggerFactory

from .exceptions import ConversionInterrupted, StorageError
from .image import attach_loop, detach_loop
from .mount import has_mounts_below, mount_partition, unmount_path


log = LoggerFactory.for_resources()

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


@dataclass
class TrackedResource:
    """One acquired resource and the callable that releases it."""

    kind: str  # "tempdir", "loop" or "mount"
    name: str
    release: Callable[[], object]


class ResourceManager:
    """Acquire/release bookkeeping for one conversion run."""

    def __init__(self, install_signal_handlers: bool = True):
        self._stack: list[TrackedResource] = []
        self._released = False
        self._install_signal_handlers = install_signal_handlers
        self._previous_handlers: dict[int, object] = {}

    # ------------------------------------------------------------------
    # Context management
    # ------------------------------------------------------------------

    def __enter__(self) -> ResourceManager:
        if self._install_signal_handlers and threading.current_thread() is threading.main_thread():
            for signum in HANDLED_SIGNALS:
                self._previous_handlers[signum] = signal.signal(signum, self._on_signal)
        atexit.register(self.release)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False

    def _on_signal(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        log.warning(f"Received {name}, aborting conversion")
        raise ConversionInterrupted(name)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    @property
    def resources(self) -> list[TrackedResource]:
        return list(self._stack)

    def push(self, kind: str, name: str, release: Callable[[], object]) -> None:
        if self._released:
            raise StorageError("Resource manager has already been released")
        self._stack.append(TrackedResource(kind=kind, name=name, release=release))

    def make_tempdir(self, prefix: str = "ab-partitioner-") -> Path:
        path = Path(tempfile.mkdtemp(prefix=prefix))
        self.push("tempdir", str(path), lambda: _remove_tempdir(path))
        log.debug(f"Temp directory: {path}")
        return path

    def attach(self, image: Path) -> str:
        device = attach_loop(image)
        self.push("loop", device, lambda: detach_loop(device))
        return device

    def mount(self, device: str, mountpoint: Path, fstype: str | None = None) -> Path:
        mount_partition(device, mountpoint, fstype)
        self.push("mount", str(mountpoint), lambda: unmount_path(mountpoint))
        return mountpoint

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self) -> None:
        """Release everything in reverse order. Safe to call repeatedly."""
        if self._released:
            return
        self._released = True
        atexit.unregister(self.release)

        if self._stack:
            log.info("Unmounting and cleaning up ...")
        while self._stack:
            resource = self._stack.pop()
            try:
                resource.release()
            except (StorageError, OSError) as error:
                log.error(f"Failed to release {resource.kind} {resource.name}: {error}")
        self._restore_signal_handlers()


def _remove_tempdir(path: Path) -> None:
    if has_mounts_below(path):
        log.warning(f"Some mounts under {path} are still active; leaving it in place")
        return
    shutil.rmtree(path, ignore_errors=True)
    if path.exists():
        log.warning(f"Could not fully clean up temp directory {path}")
