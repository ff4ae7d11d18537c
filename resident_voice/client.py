"""
resident-voice client

CLI client for communicating with the resident-voice daemon.
"""

import logging
import socket
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import numpy as np

from resident_voice.config import Config
from resident_voice.errors import ProtocolParseError
from resident_voice.ipc import (
    MAX_TRANSCRIBE_SAMPLES,
    RESPONSE_STATUSES,
    create_client_socket,
    make_cancel_request,
    make_simple_request,
    make_start_request,
    make_stop_request,
    make_transcribe_request,
    recv_message,
    send_message,
)

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_USAGE = 2

PING_TIMEOUT_SECS = 2.0


def send_request(
    socket_path: Path,
    request: Dict[str, Any],
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Send one request and wait for its response

    Raises:
        ConnectionError: If the daemon is unreachable or hangs up
        ProtocolParseError: If the response is malformed
    """
    sock = create_client_socket(socket_path, timeout=timeout)
    try:
        send_message(sock, request)
        response = recv_message(sock)
    except socket.timeout as e:
        raise ConnectionError(f"Timed out waiting for daemon ({timeout}s)") from e
    finally:
        sock.close()

    if not response:
        raise ConnectionError("No response from daemon")
    if response.get("status") not in RESPONSE_STATUSES:
        raise ProtocolParseError(f"Unexpected response status: {response.get('status')!r}")
    return response


def is_daemon_running(socket_path: Path, timeout: float = PING_TIMEOUT_SECS) -> bool:
    """Check if a daemon is answering on the socket"""
    if not socket_path.exists():
        return False
    try:
        response = send_request(socket_path, make_simple_request("ping"), timeout=timeout)
    except (OSError, ProtocolParseError):
        return False
    return response.get("status") == "ok"


def _run(
    config: Config,
    request: Dict[str, Any],
    on_response: Callable[[Dict[str, Any]], None],
) -> int:
    """Send a request and turn the outcome into an exit code"""
    socket_path = config.get_socket_path()

    try:
        response = send_request(socket_path, request, timeout=config.server.client_timeout_secs)
    except ConnectionError as e:
        logger.error(f"Cannot reach daemon: {e}")
        return EXIT_ERROR
    except (OSError, ProtocolParseError) as e:
        logger.error(f"Communication error: {e}")
        return EXIT_ERROR

    if response.get("status") == "error":
        logger.error(f"Daemon error: {response.get('message', 'unknown')}")
        return EXIT_ERROR

    on_response(response)
    return EXIT_SUCCESS


def _print_message(response: Dict[str, Any]) -> None:
    message = response.get("message")
    if message:
        print(message)


def _print_text(response: Dict[str, Any]) -> None:
    # "ok" here means no speech was detected; nothing to print
    text = response.get("text", "")
    if text:
        print(text)


def client_start(config: Config, max_duration: Optional[int] = None) -> int:
    """
    Start a recording session

    Args:
        config: Configuration
        max_duration: Recording limit in seconds (default: audio.timeout_secs)

    Returns:
        Exit code
    """
    if max_duration is None:
        max_duration = config.audio.timeout_secs
    return _run(config, make_start_request(max_duration), lambda response: print("Recording..."))


def client_stop(config: Config) -> int:
    """Stop recording and print the transcript"""
    return _run(config, make_stop_request(), _print_text)


def client_cancel(config: Config) -> int:
    return _run(config, make_cancel_request(), _print_message)


def client_ping(config: Config) -> int:
    return _run(config, make_simple_request("ping"), _print_message)


def client_shutdown(config: Config) -> int:
    return _run(config, make_simple_request("shutdown"), _print_message)


def client_status(config: Config) -> int:
    """Print the loaded model and accelerator"""

    def show(response: Dict[str, Any]) -> None:
        gpu = response.get("gpu_name") if response.get("gpu_enabled") else "disabled"
        print(f"model: {response.get('model_name')}")
        print(f"gpu: {gpu}")

    return _run(config, make_simple_request("get_status"), show)


def client_transcribe(config: Config, samples: np.ndarray) -> int:
    """
    Transcribe 16kHz mono samples with the daemon's model

    Audio longer than one request can carry is refused up front.

    Returns:
        Exit code
    """
    if len(samples) > MAX_TRANSCRIBE_SAMPLES:
        rate = config.audio.sample_rate
        logger.error(
            f"Audio too long for one request: {len(samples) / rate:.1f}s "
            f"(limit {MAX_TRANSCRIBE_SAMPLES / rate:.1f}s)"
        )
        return EXIT_ERROR
    return _run(config, make_transcribe_request(samples), _print_text)
