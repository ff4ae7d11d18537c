"""
Microphone capture

Resolves an input device (preferring the PulseAudio/PipeWire source when
an audio server is reachable), records into an append-only buffer until the
session's cancellation token fires or the max duration elapses, then
downmixes and resamples to 16kHz mono.
"""

import json
import logging
import os
import shutil
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
import sounddevice as sd

from resident_voice.errors import DeviceUnavailable
from resident_voice.recorder import CancellationToken
from resident_voice.resample import TARGET_SAMPLE_RATE, downmix_to_mono, finalize_samples

logger = logging.getLogger(__name__)

# sounddevice devices that route through the audio server
BRIDGE_DEVICE_NAMES = ("pulse", "pipewire")
SOURCE_ENV_VAR = "PULSE_SOURCE"
POLL_INTERVAL_SECS = 0.1


@dataclass
class InputDevice:
    """An input device as shown to users"""
    name: str
    internal_name: str
    is_default: bool


@dataclass
class ServerSource:
    """A PulseAudio/PipeWire capture source"""
    name: str
    description: str


@dataclass
class ResolvedDevice:
    """Where to open the input stream"""
    index: Optional[int]
    name: str
    server_source: Optional[str] = None


class AudioBuffer:
    """
    Append-only sample accumulator

    The stream callback is the only writer while the stream is open; the
    samples are taken exactly once after the stream is closed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._chunks: List[np.ndarray] = []
        self._taken = False

    def append(self, chunk: np.ndarray) -> None:
        with self._lock:
            if self._taken:
                return
            self._chunks.append(chunk)

    def take(self) -> np.ndarray:
        """Return all samples; may only be called once"""
        with self._lock:
            if self._taken:
                raise RuntimeError("AudioBuffer samples already taken")
            self._taken = True
            chunks, self._chunks = self._chunks, []

        if not chunks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(chunks).astype(np.float32, copy=False)


# Audio server (pactl)

def _run_pactl(args: List[str], timeout: int = 3) -> Optional[subprocess.CompletedProcess]:
    if not shutil.which("pactl"):
        return None

    try:
        return subprocess.run(
            ["pactl", *args],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"pactl command failed args={args} err={e}")
        return None


def list_server_sources() -> List[ServerSource]:
    """Capture sources known to the audio server (monitors excluded)"""
    proc = _run_pactl(["-f", "json", "list", "sources"])
    if proc is None or proc.returncode != 0:
        return []

    try:
        payload = json.loads(proc.stdout)
    except json.JSONDecodeError:
        logger.debug("Could not parse pactl JSON sources payload")
        return []

    sources = []
    for item in payload if isinstance(payload, list) else []:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not name or name.endswith(".monitor"):
            continue
        sources.append(ServerSource(name=name, description=item.get("description") or name))
    return sources


def default_server_source() -> Optional[str]:
    proc = _run_pactl(["get-default-source"])
    if proc is None or proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def match_server_source(requested: str, sources: List[ServerSource]) -> Optional[ServerSource]:
    """
    Map a user-supplied device name to a server source

    Exact name/description matches win over case-insensitive substring
    matches.
    """
    for source in sources:
        if requested in (source.name, source.description):
            return source

    needle = requested.lower()
    for source in sources:
        if needle in source.name.lower() or needle in source.description.lower():
            return source
    return None


# Native backend (PortAudio)

def _native_input_devices() -> List[Tuple[int, Dict]]:
    try:
        devices = sd.query_devices()
    except sd.PortAudioError as e:
        raise DeviceUnavailable(f"Cannot enumerate audio devices: {e}") from e
    return [
        (idx, device)
        for idx, device in enumerate(devices)
        if device["max_input_channels"] > 0
    ]


def _default_input_index() -> Optional[int]:
    try:
        idx = sd.default.device[0]
    except (sd.PortAudioError, IndexError, TypeError):
        return None
    if idx is None or idx < 0:
        return None
    return int(idx)


def find_bridge_device() -> Optional[int]:
    """Index of the native device that routes to the audio server"""
    for idx, device in _native_input_devices():
        if device["name"].lower() in BRIDGE_DEVICE_NAMES:
            return idx
    return None


def find_native_device(requested: str) -> Optional[Tuple[int, str]]:
    """Exact name match first, then case-insensitive substring"""
    devices = _native_input_devices()
    for idx, device in devices:
        if device["name"] == requested:
            return idx, device["name"]

    needle = requested.lower()
    for idx, device in devices:
        if needle in device["name"].lower():
            return idx, device["name"]
    return None


def default_native_device() -> Optional[Tuple[int, str]]:
    """The backend's default input, else the first device that can record"""
    devices = _native_input_devices()
    default_idx = _default_input_index()
    for idx, device in devices:
        if idx == default_idx:
            return idx, device["name"]
    if devices:
        idx, device = devices[0]
        logger.info(f"No default input device, using first available mic: [{idx}] {device['name']}")
        return idx, device["name"]
    return None


def list_input_devices() -> List[InputDevice]:
    """
    Enumerate input devices

    Returns:
        Audio-server sources (when a server is reachable) followed by
        native input devices
    """
    result = []

    sources = list_server_sources()
    default_source = default_server_source() if sources else None
    for source in sources:
        result.append(InputDevice(
            name=source.description,
            internal_name=source.name,
            is_default=source.name == default_source,
        ))

    default_idx = _default_input_index()
    for idx, device in _native_input_devices():
        result.append(InputDevice(
            name=device["name"],
            internal_name=str(idx),
            is_default=not sources and idx == default_idx,
        ))
    return result


def resolve_device(requested: Optional[str]) -> ResolvedDevice:
    """
    Pick the device to record from

    Order: audio-server source through the bridge device, then the native
    backend's default or by-name device.

    Raises:
        DeviceUnavailable: If a named device does not exist, or there is no
                           input device at all
    """
    sources = list_server_sources()
    bridge = find_bridge_device() if sources else None

    if bridge is not None:
        if requested is None:
            name = default_server_source() or "default"
            logger.info(f"Using audio server default source: {name}")
            return ResolvedDevice(index=bridge, name=name)
        source = match_server_source(requested, sources)
        if source is not None:
            logger.info(f"Using audio server source: {source.description} ({source.name})")
            return ResolvedDevice(index=bridge, name=source.description, server_source=source.name)

    if requested is None:
        found = default_native_device()
        if found is None:
            raise DeviceUnavailable("No input device available. Check microphone permissions.")
    else:
        found = find_native_device(requested)
        if found is None:
            available = ", ".join(device.name for device in list_input_devices()) or "none"
            raise DeviceUnavailable(f"Audio device '{requested}' not found. Available devices: {available}")

    idx, name = found
    logger.info(f"Using input device: [{idx}] {name}")
    return ResolvedDevice(index=idx, name=name)


@contextmanager
def _server_source(source: Optional[str]) -> Iterator[None]:
    """Route the bridge device to a specific server source while open"""
    if source is None:
        yield
        return

    previous = os.environ.get(SOURCE_ENV_VAR)
    os.environ[SOURCE_ENV_VAR] = source
    try:
        yield
    finally:
        if previous is None:
            os.environ.pop(SOURCE_ENV_VAR, None)
        else:
            os.environ[SOURCE_ENV_VAR] = previous


class AudioCapture:
    """
    Records one utterance per call to ``record``

    Used as the capture function of a RecordingController; ``record`` runs
    on the session's capture thread.
    """

    def __init__(
        self,
        device_name: Optional[str] = None,
        target_rate: int = TARGET_SAMPLE_RATE,
        trailing_secs: float = 1.0,
        poll_interval: float = POLL_INTERVAL_SECS,
    ):
        self.device_name = device_name
        self.target_rate = target_rate
        self.trailing_secs = trailing_secs
        self.poll_interval = poll_interval

    def record(self, token: CancellationToken, max_duration: float) -> np.ndarray:
        """
        Capture until stopped or ``max_duration`` seconds elapse

        Returns:
            Mono float32 samples at the target rate (possibly empty)

        Raises:
            DeviceUnavailable: If the device cannot be resolved or opened
        """
        device = resolve_device(self.device_name)

        try:
            info = sd.query_devices(device.index, "input")
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceUnavailable(f"Cannot query device {device.name}: {e}") from e

        channels = 2 if info["max_input_channels"] >= 2 else 1
        sample_rate = int(info["default_samplerate"])
        logger.info(f"Audio device: {device.name} ({sample_rate}Hz, {channels} ch)")

        buffer = AudioBuffer()

        def audio_callback(indata, frames, time_info, status):
            if status:
                logger.warning(f"Audio status: {status}")
            # interleaved frames
            buffer.append(indata.reshape(-1).copy())

        try:
            with _server_source(device.server_source):
                with sd.InputStream(
                    device=device.index,
                    channels=channels,
                    samplerate=sample_rate,
                    dtype="float32",
                    callback=audio_callback,
                ):
                    logger.info("Recording started - speak now!")
                    self._wait(token, max_duration)
        except sd.PortAudioError as e:
            raise DeviceUnavailable(f"Failed to open audio stream on {device.name}: {e}") from e

        samples = buffer.take()
        logger.info(
            f"Captured {len(samples)} samples "
            f"({len(samples) / (sample_rate * channels):.2f}s at {sample_rate}Hz)"
        )

        mono = downmix_to_mono(samples, channels)
        return finalize_samples(mono, sample_rate, self.target_rate)

    def _wait(self, token: CancellationToken, max_duration: float) -> None:
        started = time.monotonic()
        while True:
            if token.wait(self.poll_interval):
                logger.info("Stop signal received")
                break
            if time.monotonic() - started >= max_duration:
                logger.info(f"Max duration reached ({max_duration}s)")
                break

        if token.discarded or self.trailing_secs <= 0:
            return

        logger.info(f"Buffering trailing audio ({self.trailing_secs}s)...")
        time.sleep(self.trailing_secs)
