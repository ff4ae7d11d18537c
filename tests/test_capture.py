import json
import os
import subprocess
import time

import numpy as np
import pytest

try:
    from resident_voice import capture
except OSError as e:  # sounddevice could not load PortAudio
    pytest.skip(f"PortAudio unavailable: {e}", allow_module_level=True)

from resident_voice.errors import DeviceUnavailable
from resident_voice.recorder import CancellationToken

SOURCES_JSON = json.dumps([
    {"name": "alsa_input.usb-Blue_Yeti-00.analog-stereo", "description": "Blue Yeti Analog Stereo"},
    {"name": "alsa_output.pci.analog-stereo.monitor", "description": "Monitor of Built-in Audio"},
    {"name": "alsa_input.pci.analog-stereo", "description": "Built-in Audio Analog Stereo"},
])

NATIVE_DEVICES = [
    (0, {"name": "HDA Intel PCH: ALC257 Analog (hw:0,0)", "max_input_channels": 2}),
    (3, {"name": "USB Audio Device", "max_input_channels": 1}),
    (5, {"name": "pulse", "max_input_channels": 32}),
]


def _completed(stdout, returncode=0):
    return subprocess.CompletedProcess(args=["pactl"], returncode=returncode, stdout=stdout, stderr="")


@pytest.fixture
def audio_server(monkeypatch):
    """pactl reports three sources, PortAudio exposes a bridge device"""

    def fake_pactl(args, timeout=3):
        if args[-2:] == ["list", "sources"]:
            return _completed(SOURCES_JSON)
        if args == ["get-default-source"]:
            return _completed("alsa_input.pci.analog-stereo\n")
        return _completed("", returncode=1)

    monkeypatch.setattr(capture, "_run_pactl", fake_pactl)
    monkeypatch.setattr(capture, "_native_input_devices", lambda: list(NATIVE_DEVICES))
    monkeypatch.setattr(capture, "_default_input_index", lambda: 0)


@pytest.fixture
def native_only(monkeypatch):
    """No audio server reachable"""
    monkeypatch.setattr(capture, "_run_pactl", lambda args, timeout=3: None)
    monkeypatch.setattr(capture, "_native_input_devices", lambda: list(NATIVE_DEVICES[:2]))
    monkeypatch.setattr(capture, "_default_input_index", lambda: 3)


# AudioBuffer

def test_buffer_concatenates_in_order():
    buffer = capture.AudioBuffer()
    buffer.append(np.array([1.0, 2.0], dtype=np.float32))
    buffer.append(np.array([3.0], dtype=np.float32))

    np.testing.assert_array_equal(buffer.take(), [1.0, 2.0, 3.0])


def test_buffer_take_is_single_use():
    buffer = capture.AudioBuffer()
    buffer.append(np.ones(4, dtype=np.float32))
    buffer.take()

    buffer.append(np.ones(4, dtype=np.float32))
    with pytest.raises(RuntimeError):
        buffer.take()


def test_empty_buffer_takes_empty_array():
    samples = capture.AudioBuffer().take()
    assert len(samples) == 0
    assert samples.dtype == np.float32


# Audio server sources

def test_list_server_sources_skips_monitors(audio_server):
    names = [source.name for source in capture.list_server_sources()]
    assert names == ["alsa_input.usb-Blue_Yeti-00.analog-stereo", "alsa_input.pci.analog-stereo"]


def test_list_server_sources_without_pactl(native_only):
    assert capture.list_server_sources() == []


def test_list_server_sources_bad_json(monkeypatch):
    monkeypatch.setattr(capture, "_run_pactl", lambda args, timeout=3: _completed("not json"))
    assert capture.list_server_sources() == []


def test_match_prefers_exact_over_substring():
    sources = [
        capture.ServerSource("mic-extra", "Mic Extra"),
        capture.ServerSource("mic", "Mic"),
    ]
    assert capture.match_server_source("mic", sources).name == "mic"
    assert capture.match_server_source("Mic", sources).name == "mic"
    assert capture.match_server_source("EXTRA", sources).name == "mic-extra"
    assert capture.match_server_source("webcam", sources) is None


# Device resolution

def test_resolve_default_uses_server_default_source(audio_server):
    device = capture.resolve_device(None)

    assert device.index == 5
    assert device.name == "alsa_input.pci.analog-stereo"
    assert device.server_source is None


def test_resolve_named_server_source(audio_server):
    device = capture.resolve_device("yeti")

    assert device.index == 5
    assert device.name == "Blue Yeti Analog Stereo"
    assert device.server_source == "alsa_input.usb-Blue_Yeti-00.analog-stereo"


def test_resolve_falls_back_to_native_name(audio_server):
    device = capture.resolve_device("USB Audio")

    assert device.index == 3
    assert device.server_source is None


def test_resolve_native_default(native_only):
    device = capture.resolve_device(None)
    assert (device.index, device.name) == (3, "USB Audio Device")


def test_resolve_native_first_device_without_default(native_only, monkeypatch):
    monkeypatch.setattr(capture, "_default_input_index", lambda: None)
    assert capture.resolve_device(None).index == 0


def test_resolve_missing_device_lists_available(native_only):
    with pytest.raises(DeviceUnavailable) as excinfo:
        capture.resolve_device("Focusrite")

    message = str(excinfo.value)
    assert "Audio device 'Focusrite' not found" in message
    assert "USB Audio Device" in message


def test_resolve_without_any_device(monkeypatch):
    monkeypatch.setattr(capture, "_run_pactl", lambda args, timeout=3: None)
    monkeypatch.setattr(capture, "_native_input_devices", lambda: [])
    monkeypatch.setattr(capture, "_default_input_index", lambda: None)

    with pytest.raises(DeviceUnavailable, match="No input device"):
        capture.resolve_device(None)


def test_list_input_devices_marks_server_default(audio_server):
    devices = capture.list_input_devices()

    defaults = [device.internal_name for device in devices if device.is_default]
    assert defaults == ["alsa_input.pci.analog-stereo"]
    assert devices[0].name == "Blue Yeti Analog Stereo"
    assert devices[-1].internal_name == "5"


def test_server_source_env_is_restored(monkeypatch):
    monkeypatch.delenv(capture.SOURCE_ENV_VAR, raising=False)

    with capture._server_source("alsa_input.usb"):
        assert os.environ[capture.SOURCE_ENV_VAR] == "alsa_input.usb"
    assert capture.SOURCE_ENV_VAR not in os.environ

    monkeypatch.setenv(capture.SOURCE_ENV_VAR, "previous")
    with capture._server_source("other"):
        pass
    assert os.environ[capture.SOURCE_ENV_VAR] == "previous"


# Recording

class FakeInputStream:
    """Delivers one second of 48kHz stereo when opened"""

    def __init__(self, device, channels, samplerate, dtype, callback):
        self.channels = channels
        self.samplerate = samplerate
        self.callback = callback

    def __enter__(self):
        frames = np.zeros((self.samplerate, self.channels), dtype=np.float32)
        frames[:, 0] = 0.5
        if self.channels > 1:
            frames[:, 1] = 0.3
        for start in range(0, len(frames), 4800):
            block = frames[start:start + 4800]
            self.callback(block, len(block), None, None)
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def fake_stream(monkeypatch):
    monkeypatch.setattr(capture, "resolve_device", lambda name: capture.ResolvedDevice(index=7, name="fake mic"))
    monkeypatch.setattr(
        capture.sd,
        "query_devices",
        lambda index=None, kind=None: {"max_input_channels": 2, "default_samplerate": 48000.0},
    )
    monkeypatch.setattr(capture.sd, "InputStream", FakeInputStream)


def test_record_downmixes_and_resamples(fake_stream):
    token = CancellationToken()
    token.request_stop()

    samples = capture.AudioCapture(trailing_secs=0).record(token, max_duration=30)

    assert abs(len(samples) - 16000) <= 1
    middle = samples[200:-200]
    np.testing.assert_allclose(middle, 0.4, atol=0.01)


def test_record_stops_at_max_duration(fake_stream):
    token = CancellationToken()
    started = time.monotonic()

    capture.AudioCapture(trailing_secs=0, poll_interval=0.01).record(token, max_duration=0.05)

    assert time.monotonic() - started < 5


def test_discarded_recording_skips_trailing_buffer():
    token = CancellationToken()
    token.request_stop(discard=True)
    started = time.monotonic()

    capture.AudioCapture(trailing_secs=10, poll_interval=0.01)._wait(token, max_duration=30)

    assert time.monotonic() - started < 5


def test_stream_error_becomes_device_unavailable(fake_stream, monkeypatch):
    def broken_stream(**kwargs):
        raise capture.sd.PortAudioError("device busy")

    monkeypatch.setattr(capture.sd, "InputStream", broken_stream)
    token = CancellationToken()
    token.request_stop()

    with pytest.raises(DeviceUnavailable, match="Failed to open audio stream on fake mic"):
        capture.AudioCapture(trailing_secs=0).record(token, max_duration=1)
