"""
Unix domain socket IPC protocol

Line-delimited JSON request/response communication between the
resident-voice daemon and its clients. One connection carries exactly
one request and one response.
"""

import json
import logging
import os
import socket
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from resident_voice.errors import ProtocolParseError

logger = logging.getLogger(__name__)

# Message framing: one JSON object per line, terminated by b"\n"
MESSAGE_DELIMITER = b"\n"
RECV_CHUNK_SIZE = 65536
MAX_MESSAGE_SIZE = 64 * 1024 * 1024  # transcribe_audio carries raw samples
# Longest float repr plus separator is 24 bytes; keep room for the envelope
MAX_TRANSCRIBE_SAMPLES = (MAX_MESSAGE_SIZE - 64) // 24


def create_server_socket(socket_path: Path) -> socket.socket:
    """
    Create and bind a Unix domain socket for the server

    Args:
        socket_path: Path to the socket file

    Returns:
        Bound socket ready for listening
    """
    # Remove existing socket file
    if socket_path.exists():
        socket_path.unlink()

    socket_path.parent.mkdir(parents=True, exist_ok=True)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.bind(str(socket_path))

    # Set socket permissions (owner read/write only)
    os.chmod(socket_path, 0o600)

    return sock


def create_client_socket(socket_path: Path, timeout: Optional[float] = None) -> socket.socket:
    """
    Create and connect a Unix domain socket for the client

    Args:
        socket_path: Path to the socket file
        timeout: Read/write timeout in seconds (None blocks forever)

    Returns:
        Connected socket

    Raises:
        ConnectionError: If server is not running
    """
    if not socket_path.exists():
        raise ConnectionError(f"Server socket not found: {socket_path}")

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(socket_path))
    except OSError as e:
        sock.close()
        raise ConnectionError(f"Cannot connect to {socket_path}: {e}") from e

    return sock


def encode_message(message: Dict[str, Any]) -> bytes:
    """
    Serialize a message to a single delimited line

    Raises:
        ProtocolParseError: If the encoded line exceeds MAX_MESSAGE_SIZE
    """
    payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
    if len(payload) > MAX_MESSAGE_SIZE:
        raise ProtocolParseError(f"Message too large: {len(payload)} bytes (limit {MAX_MESSAGE_SIZE})")
    return payload + MESSAGE_DELIMITER


def decode_message(line: bytes) -> Dict[str, Any]:
    """
    Parse one line into a message dictionary

    Raises:
        ProtocolParseError: If the line is not a JSON object
    """
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise ProtocolParseError(f"Failed to parse message: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolParseError("Message must be a JSON object")
    return message


def send_message(sock: socket.socket, message: Dict[str, Any]) -> None:
    """
    Send a JSON message over the socket

    Args:
        sock: Connected socket
        message: Dictionary to send as JSON
    """
    sock.sendall(encode_message(message))


def recv_message(sock: socket.socket) -> Optional[Dict[str, Any]]:
    """
    Receive a JSON message from the socket

    Reads up to the first newline. A peer that closes without a newline
    still has its partial line parsed.

    Args:
        sock: Connected socket

    Returns:
        Parsed message dictionary, or None if connection closed
        before any data arrived
    """
    data = b""
    while MESSAGE_DELIMITER not in data:
        chunk = sock.recv(RECV_CHUNK_SIZE)
        if not chunk:
            break
        data += chunk
        if len(data) > MAX_MESSAGE_SIZE:
            raise ProtocolParseError(f"Message too large: more than {MAX_MESSAGE_SIZE} bytes")

    line = data.split(MESSAGE_DELIMITER, 1)[0].strip()
    if not line:
        return None
    return decode_message(line)


# Request helpers

def make_start_request(max_duration: int) -> Dict[str, Any]:
    """Create a 'start_recording' request"""
    return {"type": "start_recording", "max_duration": max_duration}


def make_stop_request() -> Dict[str, Any]:
    """Create a 'stop_recording' request"""
    return {"type": "stop_recording"}


def make_cancel_request() -> Dict[str, Any]:
    """Create a 'cancel_recording' request"""
    return {"type": "cancel_recording"}


def make_transcribe_request(samples: Sequence[float]) -> Dict[str, Any]:
    """Create a 'transcribe_audio' request (16kHz mono samples)"""
    return {"type": "transcribe_audio", "samples": [float(s) for s in samples]}


def make_simple_request(kind: str) -> Dict[str, Any]:
    """Create a request with no payload (ping, shutdown, get_status)"""
    return {"type": kind}


# Response helpers

def make_ok_response(message: str) -> Dict[str, Any]:
    """Create a generic acknowledgement"""
    return {"status": "ok", "message": message}


def make_recording_response() -> Dict[str, Any]:
    """Create the response to a successful start"""
    return {"status": "recording"}


def make_success_response(text: str) -> Dict[str, Any]:
    """Create a transcript response"""
    return {"status": "success", "text": text}


def make_error_response(message: str) -> Dict[str, Any]:
    """Create an error response"""
    return {"status": "error", "message": message}


def make_status_response(model_name: str, gpu_enabled: bool, gpu_name: str) -> Dict[str, Any]:
    """Create a daemon status response"""
    return {
        "status": "status",
        "model_name": model_name,
        "gpu_enabled": gpu_enabled,
        "gpu_name": gpu_name,
    }


RESPONSE_STATUSES: List[str] = ["ok", "recording", "success", "error", "status"]
