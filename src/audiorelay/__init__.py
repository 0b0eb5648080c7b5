"""Streaming audio relay between WebSocket clients and local ALSA devices."""

__version__ = "0.1.0"
