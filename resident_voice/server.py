"""
resident-voice daemon

Main daemon that:
- Keeps the Whisper model resident for the life of the process
- Records from the microphone between start/stop requests
- Transcribes recordings and one-shot audio
- Handles client requests via Unix socket, one connection at a time
"""

import logging
import signal
import socket
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import soundfile as sf

from resident_voice.client import is_daemon_running
from resident_voice.config import Config
from resident_voice.engine import SAMPLE_RATE, DecodingEngine
from resident_voice.errors import (
    ModelLoadFailure,
    ProtocolParseError,
    TranscriptionFailure,
    VoiceDaemonError,
)
from resident_voice.ipc import (
    create_server_socket,
    make_error_response,
    make_ok_response,
    make_recording_response,
    make_status_response,
    make_success_response,
    recv_message,
    send_message,
)
from resident_voice.loader import load_model
from resident_voice.protocol import (
    CancelRecording,
    GetStatus,
    Ping,
    Request,
    Shutdown,
    StartRecording,
    StopRecording,
    TranscribeAudio,
    parse_request,
)
from resident_voice.recorder import CaptureFn, GuardedLock, RecordingController
from resident_voice.state import StateMarkers

logger = logging.getLogger(__name__)

ACCEPT_TIMEOUT_SECS = 1.0


class DaemonService:
    """
    resident-voice daemon

    Manages:
    - The decoding engine, serialized behind one lock
    - The recording session (via RecordingController)
    - Client connections via Unix socket
    """

    def __init__(
        self,
        config: Config,
        engine: DecodingEngine,
        capture: CaptureFn,
        markers: Optional[StateMarkers] = None,
    ):
        """
        Initialize daemon

        Args:
            config: Daemon configuration
            engine: Decoding engine holding the loaded model
            capture: Blocking capture function used for each recording
            markers: Optional on-disk state markers
        """
        self.config = config
        self.engine = engine
        self.markers = markers
        self.controller = RecordingController(capture, markers)
        self._engine_lock = GuardedLock("transcriber")
        self._running = False
        self._server_socket: Optional[socket.socket] = None

    @property
    def running(self) -> bool:
        return self._running

    def install_signal_handlers(self) -> None:
        """Only valid from the main thread"""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def serve(self) -> None:
        """Bind the socket and serve until shutdown (blocking)"""
        socket_path = self.config.get_socket_path()
        self._server_socket = create_server_socket(socket_path)
        self._server_socket.listen(5)
        self._server_socket.settimeout(ACCEPT_TIMEOUT_SECS)  # Allow periodic shutdown check
        self._running = True

        logger.info(f"Daemon listening on {socket_path}")

        try:
            self._accept_connections()
        finally:
            self._cleanup()

    def stop(self) -> None:
        self._running = False

    def _signal_handler(self, signum: int, frame) -> None:
        """Handle termination signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        self._running = False

    def _accept_connections(self) -> None:
        """Accept and fully serve one connection at a time"""
        while self._running:
            try:
                client_sock, _ = self._server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.error(f"Error accepting connection: {e}")
                break

            self._handle_client(client_sock)

    def _handle_client(self, client_sock: socket.socket) -> None:
        """Handle a single client connection"""
        client_sock.settimeout(self.config.server.client_timeout_secs)
        try:
            try:
                message = recv_message(client_sock)
                if not message:
                    return
                request = parse_request(message)
            except ProtocolParseError as e:
                logger.error(f"Bad request: {e}")
                send_message(client_sock, make_error_response(f"Failed to parse request: {e}"))
                return

            logger.info(f"Received request: {type(request).__name__}")
            send_message(client_sock, self.handle_request(request))
        except OSError as e:
            logger.error(f"Error handling client: {e}")
        except Exception as e:
            # one bad connection never takes the accept loop down
            logger.error(f"Client handler error: {e}", exc_info=True)
            try:
                send_message(client_sock, make_error_response(f"Internal error: {e}"))
            except OSError:
                pass
        finally:
            client_sock.close()

    def handle_request(self, request: Request) -> Dict[str, Any]:
        """
        Process a typed request and return the response

        Never raises: every failure becomes an error response.
        """
        try:
            return self._dispatch(request)
        except VoiceDaemonError as e:
            logger.error(f"Request failed: {e}")
            return make_error_response(str(e))
        except Exception as e:
            logger.error(f"Unexpected error handling {type(request).__name__}: {e}", exc_info=True)
            return make_error_response(f"Internal error: {e}")

    def _dispatch(self, request: Request) -> Dict[str, Any]:
        if isinstance(request, Ping):
            return make_ok_response("pong")

        if isinstance(request, StartRecording):
            self.controller.start(request.max_duration)
            return make_recording_response()

        if isinstance(request, StopRecording):
            return self._stop_recording()

        if isinstance(request, CancelRecording):
            if self.controller.cancel():
                return make_ok_response("Recording cancelled")
            return make_ok_response("Not recording")

        if isinstance(request, TranscribeAudio):
            return self._transcribe_audio(request.samples)

        if isinstance(request, Shutdown):
            logger.info("Shutdown requested")
            self._running = False
            return make_ok_response("shutting down")

        if isinstance(request, GetStatus):
            handle = self.engine.handle
            return make_status_response(handle.name, handle.gpu_enabled, handle.gpu_name)

        raise ProtocolParseError(f"unsupported request: {type(request).__name__}")

    def _stop_recording(self) -> Dict[str, Any]:
        def transcribe(samples: np.ndarray) -> str:
            self._save_audio_clip(samples)
            logger.info(f"Transcribing {len(samples)} samples...")
            return self._transcribe(samples)

        text = self.controller.stop(transcribe)
        if not text:
            return make_error_response("No speech detected")

        logger.info(f"Transcribed: {text}")
        return make_success_response(text)

    def _transcribe_audio(self, samples: np.ndarray) -> Dict[str, Any]:
        if len(samples) == 0:
            return make_error_response("No audio provided")

        logger.info(f"Transcribing {len(samples)} samples (one-shot)...")
        text = self._transcribe(samples)
        if not text:
            return make_ok_response("No speech detected")
        return make_success_response(text)

    def _transcribe(self, samples: np.ndarray) -> str:
        """Run the engine under its lock"""
        with self._engine_lock.hold():
            try:
                text = self.engine.transcribe(samples)
            except TranscriptionFailure as e:
                logger.error(f"Transcription failed with error: {e}")
                raise TranscriptionFailure(f"Transcription error: {e}") from e
        logger.info("Transcription completed successfully")
        return text

    def _save_audio_clip(self, samples: np.ndarray) -> Optional[Path]:
        if not self.config.audio.save_audio_clips:
            return None

        output_dir = self.config.get_audio_clips_path()
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = output_dir / f"recording_{timestamp}.wav"
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            sf.write(str(path), samples, SAMPLE_RATE, subtype="FLOAT")
        except (OSError, RuntimeError) as e:
            logger.warning(f"Failed to save audio recording: {e}")
            return None

        logger.info(f"Audio saved to: {path}")
        return path

    def _cleanup(self) -> None:
        """Cleanup resources"""
        logger.info("Cleaning up...")
        self._running = False

        try:
            self.controller.cancel()
        except VoiceDaemonError as e:
            logger.warning(f"Could not cancel active recording: {e}")

        if self._server_socket:
            self._server_socket.close()

        socket_path = self.config.get_socket_path()
        try:
            socket_path.unlink()
        except FileNotFoundError:
            pass

        logger.info("Daemon shut down")


def run_daemon(config: Config) -> int:
    """
    Run the resident-voice daemon (blocking)

    Args:
        config: Daemon configuration

    Returns:
        Process exit code
    """
    # sounddevice needs the PortAudio shared library; only the daemon records
    from resident_voice.capture import AudioCapture

    socket_path = config.get_socket_path()
    if socket_path.exists():
        if is_daemon_running(socket_path):
            logger.error("Daemon is already running. Stop it first or use the existing daemon.")
            return 1
        logger.info("Removing stale socket file")
        socket_path.unlink()

    markers = StateMarkers(config.get_state_dir(), config.output.refresh_command)
    markers.cleanup_stale()
    markers.write_daemon_pid()

    try:
        logger.info(f"Loading whisper model {config.model.path}...")
        try:
            handle = load_model(config.model.path, config.model.language)
        except ModelLoadFailure as e:
            logger.error(f"Failed to load model: {e}")
            return 1
        logger.info(f"Model loaded and resident on {handle.gpu_name}")

        engine = DecodingEngine(handle, prompt=config.model.prompt)
        capture = AudioCapture(
            device_name=config.audio.device,
            target_rate=config.audio.sample_rate,
            trailing_secs=config.audio.trailing_buffer_secs,
        )

        service = DaemonService(config, engine, capture.record, markers)
        service.install_signal_handlers()
        service.serve()
    finally:
        markers.remove_daemon_pid()

    return 0
