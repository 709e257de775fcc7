"""Quadly: manage rootless Podman quadlets through the user systemd instance."""

__version__ = "0.1.0"
