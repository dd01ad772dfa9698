"""Connection status, visual status, and the mapping between them."""

from enum import Enum


class ConnectionStatus(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


class VisualStatus(str, Enum):
    IDLE = "idle"
    WAKING = "waking"
    LISTENING = "listening"
    SPEAKING = "speaking"


def derive_visual_status(status: ConnectionStatus, playback_active: bool) -> VisualStatus:
    """Map the connection status and playback state to exactly one visual status.

    Microphone activity is not an input: a connected session is listening
    whether the user is talking or silent, and speaking while model audio
    is scheduled.
    """
    if status == ConnectionStatus.CONNECTING:
        return VisualStatus.WAKING
    if status != ConnectionStatus.CONNECTED:
        return VisualStatus.IDLE
    if playback_active:
        return VisualStatus.SPEAKING
    return VisualStatus.LISTENING
