"""
resident-voice CLI

Entry point for the resident-voice command.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import numpy as np
import soundfile as sf

from resident_voice import __version__
from resident_voice.client import (
    EXIT_ERROR,
    EXIT_SUCCESS,
    EXIT_USAGE,
    client_cancel,
    client_ping,
    client_shutdown,
    client_start,
    client_status,
    client_stop,
    client_transcribe,
)
from resident_voice.config import Config
from resident_voice.errors import DeviceUnavailable
from resident_voice.resample import downmix_to_mono, finalize_samples

logger = logging.getLogger(__name__)

NOISY_LOGGERS = ("transformers", "torch", "huggingface_hub", "urllib3")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging"""
    level = logging.DEBUG if verbose else logging.INFO
    format_str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        stream=sys.stdout,
    )

    # Reduce noise from third-party libraries
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_client_logging() -> None:
    """Minimal logging for client commands"""
    logging.basicConfig(
        level=logging.ERROR,
        format="%(message)s",
        stream=sys.stderr,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        prog="resident-voice",
        description="Local voice dictation with a resident Whisper model",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"resident-voice {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to config file (default: ~/.config/resident-voice/config.yml)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Start the daemon and load the model",
    )
    serve_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    start_parser = subparsers.add_parser(
        "start",
        help="Start recording",
    )
    start_parser.add_argument(
        "--max-duration",
        type=int,
        default=None,
        help="Stop recording after this many seconds (default: audio.timeout_secs)",
    )

    subparsers.add_parser("stop", help="Stop recording and print the transcript")
    subparsers.add_parser("cancel", help="Stop recording and discard the audio")
    subparsers.add_parser("status", help="Show the loaded model and GPU")
    subparsers.add_parser("ping", help="Check that the daemon is running")
    subparsers.add_parser("shutdown", help="Stop the daemon")

    transcribe_parser = subparsers.add_parser(
        "transcribe",
        help="Transcribe an audio file with the running daemon",
    )
    transcribe_parser.add_argument(
        "file",
        type=Path,
        help="Audio file (any format soundfile can read)",
    )

    subparsers.add_parser("devices", help="List audio input devices")

    return parser


def read_audio_file(path: Path, target_rate: int = 16000) -> np.ndarray:
    """
    Load an audio file as mono samples at the target rate

    Raises:
        OSError/RuntimeError: If the file cannot be read
    """
    data, sample_rate = sf.read(str(path), dtype="float32", always_2d=True)
    channels = data.shape[1]
    if channels == 2:
        mono = downmix_to_mono(data.reshape(-1), channels)
    else:
        mono = data.mean(axis=1)
    return finalize_samples(mono, sample_rate, target_rate)


def list_devices() -> int:
    """Print input devices, marking the default"""
    try:
        from resident_voice.capture import list_input_devices
        devices = list_input_devices()
    except (OSError, DeviceUnavailable) as e:
        logger.error(f"Cannot list audio devices: {e}")
        return EXIT_ERROR

    if not devices:
        print("No input devices found")
        return EXIT_SUCCESS

    for device in devices:
        marker = "*" if device.is_default else " "
        print(f"{marker} {device.name} ({device.internal_name})")
    return EXIT_SUCCESS


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return EXIT_USAGE

    if parsed.command == "serve":
        setup_logging(verbose=parsed.verbose)
        config = Config.load(parsed.config)

        # Model loading pulls in torch; keep client commands fast
        from resident_voice.server import run_daemon
        return run_daemon(config)

    setup_client_logging()
    config = Config.load(parsed.config)

    if parsed.command == "start":
        return client_start(config, parsed.max_duration)

    elif parsed.command == "stop":
        return client_stop(config)

    elif parsed.command == "cancel":
        return client_cancel(config)

    elif parsed.command == "status":
        return client_status(config)

    elif parsed.command == "ping":
        return client_ping(config)

    elif parsed.command == "shutdown":
        return client_shutdown(config)

    elif parsed.command == "transcribe":
        try:
            samples = read_audio_file(parsed.file, config.audio.sample_rate)
        except (OSError, RuntimeError) as e:
            logger.error(f"Cannot read {parsed.file}: {e}")
            return EXIT_ERROR
        return client_transcribe(config, samples)

    elif parsed.command == "devices":
        return list_devices()

    else:
        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
