"""Error taxonomy for the voice session.

AcquisitionError and ChannelError are connection-class: they end the connect
attempt or the session (status goes Error -> Disconnected). FormatError and
RecognizerError stay local to one frame or to the wake recognizer and never
change the session status.
"""


class VoiceSessionError(Exception):
    """Base class for every error raised by the session core."""


class AcquisitionError(VoiceSessionError):
    """Microphone or speaker could not be opened (device busy, permission denied)."""


class ChannelError(VoiceSessionError):
    """The remote streaming channel failed to open or broke mid-session."""


class FormatError(VoiceSessionError):
    """An audio frame could not be decoded (e.g. odd byte count for 16-bit PCM)."""


class RecognizerError(VoiceSessionError):
    """The always-on wake recognizer failed; it is restarted after a backoff."""
