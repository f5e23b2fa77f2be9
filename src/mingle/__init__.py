"""Mingle: session relay and WebRTC signalling core for a multi-user 3D space."""

__version__ = "0.1.0"
