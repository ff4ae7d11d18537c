"""
Error taxonomy for resident-voice

Every per-request failure inside the daemon is one of these; the server turns
them into ``error`` responses and keeps serving.
"""


class VoiceDaemonError(Exception):
    """Base class for all daemon errors"""


class DeviceUnavailable(VoiceDaemonError):
    """No usable audio input device"""


class AlreadyRecording(VoiceDaemonError):
    """Start requested while a session is active"""

    def __init__(self, message: str = "Already recording"):
        super().__init__(message)


class NotRecording(VoiceDaemonError):
    """Stop requested while no session is recording"""

    def __init__(self, message: str = "Not recording"):
        super().__init__(message)


class CaptureEmpty(VoiceDaemonError):
    """Live recording produced zero samples"""

    def __init__(self, message: str = "No audio captured"):
        super().__init__(message)


class TranscriptionFailure(VoiceDaemonError):
    """Decoding failed (non-fatal to the daemon)"""


class ModelLoadFailure(VoiceDaemonError):
    """Model weights, config or tokenizer could not be loaded"""


class ProtocolParseError(VoiceDaemonError):
    """Malformed request on the IPC socket"""


class LockPoisoned(VoiceDaemonError):
    """A previous holder of an internal lock failed mid-update"""
