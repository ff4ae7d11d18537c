"""
On-disk state markers for status-bar integrations

Files live in the daemon state directory:
- recording.pid  -- present while a session is Recording (pid, start epoch)
- processing     -- present while captured audio is being decoded
- daemon.pid     -- present while the daemon process is up
"""

import logging
import os
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

RECORDING_MARKER = "recording.pid"
PROCESSING_MARKER = "processing"
DAEMON_PID_FILE = "daemon.pid"


def write_private_text(path: Path, content: str) -> None:
    """Atomically write a file readable only by the owner"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError as e:
                logger.debug(f"Could not remove temp state file {tmp_path}: {e}")


@dataclass
class RecordingMarker:
    pid: int
    started_at: int


class StateMarkers:
    """
    Marker files mirroring the recording state machine

    Each transition creates/removes exactly the files belonging to it, and
    optionally runs a refresh command so status bars pick up the change.
    """

    def __init__(self, state_dir: Path, refresh_command: Optional[str] = None):
        self.state_dir = state_dir
        self.refresh_command = refresh_command

    @property
    def recording_path(self) -> Path:
        return self.state_dir / RECORDING_MARKER

    @property
    def processing_path(self) -> Path:
        return self.state_dir / PROCESSING_MARKER

    @property
    def daemon_pid_path(self) -> Path:
        return self.state_dir / DAEMON_PID_FILE

    # Recording session transitions

    def mark_recording(self, started_at: Optional[float] = None) -> None:
        """Idle -> Recording"""
        started = int(started_at if started_at is not None else time.time())
        write_private_text(self.recording_path, f"{os.getpid()}\n{started}\n")
        self._remove(self.processing_path)
        logger.info(f"Recording marker written ({self.recording_path})")
        self.refresh()

    def mark_processing(self) -> None:
        """Recording -> Processing"""
        self._remove(self.recording_path)
        write_private_text(self.processing_path, "")
        self.refresh()

    def clear_recording(self) -> None:
        """Recording -> Idle (cancel)"""
        if self._remove(self.recording_path):
            self.refresh()

    def clear_processing(self) -> None:
        """Processing -> Idle"""
        if self._remove(self.processing_path):
            self.refresh()

    def read_recording(self) -> Optional[RecordingMarker]:
        """Parse the recording marker, or None if absent/invalid"""
        try:
            lines = self.recording_path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read recording marker: {e}")
            return None
        try:
            pid = int(lines[0])
            started_at = int(lines[1]) if len(lines) > 1 else 0
        except (IndexError, ValueError):
            return None
        return RecordingMarker(pid=pid, started_at=started_at)

    # Daemon lifecycle

    def write_daemon_pid(self) -> None:
        write_private_text(self.daemon_pid_path, f"{os.getpid()}\n")

    def remove_daemon_pid(self) -> None:
        self._remove(self.daemon_pid_path)

    def read_daemon_pid(self) -> Optional[int]:
        try:
            return int(self.daemon_pid_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def cleanup_stale(self) -> None:
        """Remove files left behind by a previous unclean exit"""
        previous_pid = self.read_daemon_pid()
        if previous_pid is not None and previous_pid != os.getpid():
            logger.warning(f"Previous daemon (pid {previous_pid}) did not shut down cleanly")
        session = self.read_recording()
        if session is not None:
            logger.warning(f"Discarding recording session started at {session.started_at} by pid {session.pid}")

        removed = [
            path.name
            for path in (self.daemon_pid_path, self.recording_path, self.processing_path)
            if self._remove(path)
        ]
        if removed:
            logger.info(f"Removed stale state files: {', '.join(removed)}")
            self.refresh()

    def refresh(self) -> None:
        """Run the configured status-bar refresh command, detached"""
        if not self.refresh_command:
            return
        args = shlex.split(self.refresh_command)
        if not args:
            return
        try:
            subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.debug(f"Refresh command failed ({self.refresh_command!r}): {e}")

    @staticmethod
    def _remove(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
