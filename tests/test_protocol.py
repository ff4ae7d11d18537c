import numpy as np
import pytest

from resident_voice.errors import ProtocolParseError
from resident_voice.ipc import (
    make_cancel_request,
    make_simple_request,
    make_start_request,
    make_stop_request,
    make_transcribe_request,
)
from resident_voice.protocol import (
    CancelRecording,
    GetStatus,
    Ping,
    Shutdown,
    StartRecording,
    StopRecording,
    TranscribeAudio,
    parse_request,
)


@pytest.mark.parametrize(
    "message, expected",
    [
        (make_stop_request(), StopRecording()),
        (make_cancel_request(), CancelRecording()),
        (make_simple_request("shutdown"), Shutdown()),
        (make_simple_request("ping"), Ping()),
        (make_simple_request("get_status"), GetStatus()),
        (make_start_request(45), StartRecording(max_duration=45)),
    ],
)
def test_parse_known_requests(message, expected):
    assert parse_request(message) == expected


def test_parse_transcribe_audio():
    request = parse_request(make_transcribe_request(np.array([0.25, -0.5])))

    assert isinstance(request, TranscribeAudio)
    assert request.samples.dtype == np.float32
    np.testing.assert_array_equal(request.samples, [0.25, -0.5])


def test_parse_empty_transcribe_audio():
    request = parse_request({"type": "transcribe_audio", "samples": []})
    assert len(request.samples) == 0


def test_extra_fields_are_ignored():
    assert parse_request({"type": "ping", "id": 7}) == Ping()


@pytest.mark.parametrize(
    "message, fragment",
    [
        ({}, "missing 'type'"),
        ({"type": ""}, "missing 'type'"),
        ({"type": "record"}, "unknown request type: record"),
        ({"type": [1]}, "must be a string"),
        ({"type": {"kind": "ping"}}, "must be a string"),
        ({"type": 7}, "must be a string"),
        ({"type": "start_recording"}, "max_duration"),
        ({"type": "start_recording", "max_duration": "30"}, "max_duration"),
        ({"type": "start_recording", "max_duration": -1}, "max_duration"),
        ({"type": "start_recording", "max_duration": True}, "max_duration"),
        ({"type": "start_recording", "max_duration": 2.5}, "max_duration"),
        ({"type": "transcribe_audio"}, "samples"),
        ({"type": "transcribe_audio", "samples": "abc"}, "samples"),
        ({"type": "transcribe_audio", "samples": [[0.1, 0.2]]}, "flat"),
        ({"type": "transcribe_audio", "samples": [0.1, "x"]}, "invalid samples"),
    ],
)
def test_parse_rejects_bad_requests(message, fragment):
    with pytest.raises(ProtocolParseError, match=fragment):
        parse_request(message)
