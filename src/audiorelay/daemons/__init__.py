"""audio-relay daemon processes.

- audio_relay_daemon: Runs the WebSocket relay server from the config file
"""

__all__ = [
    "audio_relay_daemon",
]
