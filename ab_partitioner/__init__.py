"""Convert a single-boot OS disk image into an A/B dual-slot image."""

from .__version__ import __version__


__all__ = ["__version__"]
