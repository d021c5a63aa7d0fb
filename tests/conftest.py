"""
Pytest configuration and shared fixtures for ab-partitioner tests.

This module provides layout profiles, plans and device mappings used across
the test modules. Nothing here touches a real block device.
"""

import subprocess
from pathlib import Path
from unittest.mock import Mock

import pytest

from ab_partitioner.config import settings
from ab_partitioner.domain.models import (
    MIB,
    DeviceMapping,
    LayoutVariant,
    PartitionPlan,
    get_profile,
)
from ab_partitioner.storage.geometry import build_plan


# ==============================================================================
# Layout Fixtures
# ==============================================================================


@pytest.fixture
def tryboot_profile():
    return get_profile(LayoutVariant.TRYBOOT)


@pytest.fixture
def standard_profile():
    return get_profile(LayoutVariant.STANDARD)


@pytest.fixture
def tryboot_plan(tryboot_profile) -> PartitionPlan:
    """Plan for an image with 100 MiB of boot content and the tryboot layout."""
    return build_plan(tryboot_profile, 100 * MIB, 1800 * MIB)


@pytest.fixture
def standard_plan(standard_profile) -> PartitionPlan:
    """Plan for an image with 200 MiB of boot content and the standard layout."""
    return build_plan(standard_profile, 200 * MIB, 1800 * MIB)


def make_mapping(plan: PartitionPlan, device: str = "/dev/loop7") -> DeviceMapping:
    return DeviceMapping(
        device=device,
        nodes={spec.role: f"{device}p{spec.number}" for spec in plan},
    )


@pytest.fixture
def tryboot_mapping(tryboot_plan) -> DeviceMapping:
    return make_mapping(tryboot_plan)


@pytest.fixture
def standard_mapping(standard_plan) -> DeviceMapping:
    return make_mapping(standard_plan)


# ==============================================================================
# Command Fixtures
# ==============================================================================


@pytest.fixture
def completed():
    """Factory for successful run_command() results."""

    def _completed(stdout: str = "", stderr: str = "", returncode: int = 0):
        return Mock(returncode=returncode, stdout=stdout, stderr=stderr)

    return _completed


@pytest.fixture
def called_process_error():
    """Factory for CalledProcessError instances as raised by run_command()."""

    def _error(cmd, stderr: str = "failed", returncode: int = 1):
        return subprocess.CalledProcessError(returncode, cmd, output="", stderr=stderr)

    return _error


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    return tmp_path / "settings.json"


@pytest.fixture(autouse=True)
def reset_settings():
    """Every test starts from the default settings."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
