"""Tests for storage/resources.py - scoped resource release.

This test suite covers:
- Reverse-order release of tracked resources
- Exactly-once release across exit paths
- Release continuing past individual failures
- Signal handlers raising ConversionInterrupted and being restored
- Temporary directory removal
"""

import signal
from unittest.mock import patch

import pytest

from ab_partitioner.storage.exceptions import (
    ConversionInterrupted,
    StorageError,
    UnmountFailedError,
)
from ab_partitioner.storage.resources import ResourceManager


class TestRelease:
    """Tests for ResourceManager.release()."""

    def test_releases_in_reverse_order(self):
        released = []
        with ResourceManager(install_signal_handlers=False) as resources:
            for name in ("tempdir", "loop", "mount-root", "mount-boot"):
                resources.push("test", name, lambda name=name: released.append(name))

        assert released == ["mount-boot", "mount-root", "loop", "tempdir"]

    def test_releases_on_exception(self):
        released = []
        with pytest.raises(RuntimeError):
            with ResourceManager(install_signal_handlers=False) as resources:
                resources.push("loop", "/dev/loop0", lambda: released.append("loop"))
                raise RuntimeError("boom")

        assert released == ["loop"]

    def test_release_runs_once(self):
        released = []
        resources = ResourceManager(install_signal_handlers=False)
        with resources:
            resources.push("loop", "/dev/loop0", lambda: released.append("loop"))
        resources.release()
        resources.release()

        assert released == ["loop"]

    def test_failure_does_not_stop_release(self):
        released = []

        def failing():
            raise UnmountFailedError("/mnt/new_root", "busy")

        with ResourceManager(install_signal_handlers=False) as resources:
            resources.push("loop", "/dev/loop0", lambda: released.append("loop"))
            resources.push("mount", "/mnt/new_root", failing)
            resources.push("mount", "/mnt/new_root/boot", lambda: released.append("boot"))

        assert released == ["boot", "loop"]

    def test_push_after_release_rejected(self):
        resources = ResourceManager(install_signal_handlers=False)
        with resources:
            pass
        with pytest.raises(StorageError):
            resources.push("loop", "/dev/loop0", lambda: None)

    @patch("ab_partitioner.storage.resources.atexit")
    def test_atexit_registration(self, mock_atexit):
        with ResourceManager(install_signal_handlers=False) as resources:
            mock_atexit.register.assert_called_once_with(resources.release)
        mock_atexit.unregister.assert_called_once_with(resources.release)


class TestAcquisition:
    """Tests for attach(), mount() and make_tempdir()."""

    @patch("ab_partitioner.storage.resources.detach_loop")
    @patch("ab_partitioner.storage.resources.attach_loop", return_value="/dev/loop4")
    def test_attach_tracks_detach(self, mock_attach, mock_detach, tmp_path):
        with ResourceManager(install_signal_handlers=False) as resources:
            device = resources.attach(tmp_path / "in.img")
            assert device == "/dev/loop4"
            assert [r.kind for r in resources.resources] == ["loop"]
            mock_detach.assert_not_called()

        mock_detach.assert_called_once_with("/dev/loop4")

    @patch("ab_partitioner.storage.resources.unmount_path")
    @patch("ab_partitioner.storage.resources.mount_partition")
    def test_mount_tracks_unmount(self, mock_mount, mock_unmount, tmp_path):
        mountpoint = tmp_path / "boot"
        with ResourceManager(install_signal_handlers=False) as resources:
            resources.mount("/dev/loop4p1", mountpoint, "vfat")
            mock_mount.assert_called_once_with("/dev/loop4p1", mountpoint, "vfat")

        mock_unmount.assert_called_once_with(mountpoint)

    @patch("ab_partitioner.storage.resources.has_mounts_below", return_value=False)
    def test_tempdir_removed(self, _mounts):
        with ResourceManager(install_signal_handlers=False) as resources:
            workdir = resources.make_tempdir()
            (workdir / "orig_boot").mkdir()
            assert workdir.is_dir()

        assert not workdir.exists()

    @patch("ab_partitioner.storage.resources.has_mounts_below", return_value=True)
    def test_tempdir_kept_when_mounts_remain(self, _mounts):
        with ResourceManager(install_signal_handlers=False) as resources:
            workdir = resources.make_tempdir()

        assert workdir.exists()
        workdir.rmdir()


class TestSignals:
    """Tests for signal handling."""

    def test_handlers_installed_and_restored(self):
        previous = signal.getsignal(signal.SIGTERM)
        with ResourceManager() as resources:
            assert signal.getsignal(signal.SIGTERM) == resources._on_signal
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_signal_raises_interrupt_and_releases(self):
        released = []
        with pytest.raises(ConversionInterrupted) as exc_info:
            with ResourceManager() as resources:
                resources.push("loop", "/dev/loop0", lambda: released.append("loop"))
                signal.raise_signal(signal.SIGTERM)

        assert exc_info.value.signal_name == "SIGTERM"
        assert released == ["loop"]
