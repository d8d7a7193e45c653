"""Firmware autoupdater: signed manifests, image download and verification, and sysupgrade."""

__version__ = "1.0.0"