"""
Typed daemon requests

Requests are tagged by their ``type`` field on the wire; responses are
plain dictionaries built by the helpers in ``resident_voice.ipc``.
"""

from dataclasses import dataclass
from typing import Any, Dict, Union

import numpy as np

from resident_voice.errors import ProtocolParseError


@dataclass(frozen=True)
class StartRecording:
    max_duration: int


@dataclass(frozen=True)
class StopRecording:
    pass


@dataclass(frozen=True)
class CancelRecording:
    pass


@dataclass(frozen=True)
class TranscribeAudio:
    """One-shot transcription of 16kHz mono samples"""
    samples: np.ndarray


@dataclass(frozen=True)
class Shutdown:
    pass


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class GetStatus:
    pass


Request = Union[
    StartRecording,
    StopRecording,
    CancelRecording,
    TranscribeAudio,
    Shutdown,
    Ping,
    GetStatus,
]

_NO_PAYLOAD = {
    "stop_recording": StopRecording,
    "cancel_recording": CancelRecording,
    "shutdown": Shutdown,
    "ping": Ping,
    "get_status": GetStatus,
}


def parse_request(message: Dict[str, Any]) -> Request:
    """
    Convert a decoded message into a typed request

    Raises:
        ProtocolParseError: On a missing/unknown type or a bad payload
    """
    kind = message.get("type")
    if not kind:
        raise ProtocolParseError("missing 'type' field")
    if not isinstance(kind, str):
        raise ProtocolParseError("'type' must be a string")

    if kind in _NO_PAYLOAD:
        return _NO_PAYLOAD[kind]()

    if kind == "start_recording":
        max_duration = message.get("max_duration")
        # bool is an int subclass; reject it explicitly
        if not isinstance(max_duration, int) or isinstance(max_duration, bool) or max_duration < 0:
            raise ProtocolParseError("'max_duration' must be a non-negative integer")
        return StartRecording(max_duration=max_duration)

    if kind == "transcribe_audio":
        return TranscribeAudio(samples=_parse_samples(message.get("samples")))

    raise ProtocolParseError(f"unknown request type: {kind}")


def _parse_samples(raw: Any) -> np.ndarray:
    if not isinstance(raw, list):
        raise ProtocolParseError("'samples' must be a list of numbers")
    try:
        samples = np.asarray(raw, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ProtocolParseError(f"invalid samples: {e}") from e
    if samples.ndim != 1:
        raise ProtocolParseError("'samples' must be a flat list")
    if not np.all(np.isfinite(samples)):
        raise ProtocolParseError("'samples' must be finite")
    return samples

