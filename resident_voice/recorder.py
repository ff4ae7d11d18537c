"""
Recording session state machine

    Idle --start--> Recording --stop--> Processing --(decode done)--> Idle
                    Recording --cancel--> Idle

Each session owns a cancellation token and a dedicated capture thread.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional

import numpy as np

from resident_voice.errors import (
    AlreadyRecording,
    CaptureEmpty,
    LockPoisoned,
    NotRecording,
    TranscriptionFailure,
    VoiceDaemonError,
)
from resident_voice.state import StateMarkers

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"


class CancellationToken:
    """Cooperative stop flag owned by a single recording session"""

    def __init__(self):
        self._event = threading.Event()
        self._discard = False

    def request_stop(self, discard: bool = False) -> None:
        """Ask the capture loop to stop; ``discard`` means the audio is unwanted"""
        if discard:
            self._discard = True
        self._event.set()

    @property
    def stop_requested(self) -> bool:
        return self._event.is_set()

    @property
    def discarded(self) -> bool:
        return self._discard

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if a stop was requested"""
        return self._event.wait(timeout)


class GuardedLock:
    """
    Mutex that remembers when a holder failed unexpectedly

    If an exception other than a VoiceDaemonError escapes the critical
    section, the lock is marked poisoned. The next acquirer gets
    LockPoisoned (once) instead of running against possibly half-updated
    state; the poison is cleared after it has been reported.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._poisoned = False

    @contextmanager
    def hold(self) -> Iterator[None]:
        with self._lock:
            if self._poisoned:
                self._poisoned = False
                raise LockPoisoned(f"{self.name} lock poisoned by an earlier failure")
            try:
                yield
            except VoiceDaemonError:
                raise
            except Exception:
                self._poisoned = True
                raise


CaptureFn = Callable[[CancellationToken, float], np.ndarray]
TranscribeFn = Callable[[np.ndarray], str]


@dataclass
class RecordingSession:
    """A single non-Idle recording session"""
    max_duration: float
    started_at: float = field(default_factory=time.time)
    state: SessionState = SessionState.RECORDING
    token: CancellationToken = field(default_factory=CancellationToken)
    thread: Optional[threading.Thread] = None
    samples: Optional[np.ndarray] = None
    error: Optional[Exception] = None


class RecordingController:
    """
    Owns the recording session and its background capture thread

    The session lock is never held while joining the capture thread.
    """

    def __init__(self, capture: CaptureFn, markers: Optional[StateMarkers] = None):
        """
        Initialize controller

        Args:
            capture: Blocking capture function; called on the capture thread
                     with the session's token and max duration, returns
                     16kHz mono samples
            markers: Optional on-disk state markers to keep in sync
        """
        self._capture = capture
        self._markers = markers
        self._lock = GuardedLock("recording state")
        self._session: Optional[RecordingSession] = None

    @property
    def state(self) -> SessionState:
        with self._lock.hold():
            if self._session is None:
                return SessionState.IDLE
            return self._session.state

    def start(self, max_duration: float) -> RecordingSession:
        """
        Idle -> Recording

        Raises:
            AlreadyRecording: If any session is active (state unchanged)
        """
        with self._lock.hold():
            if self._session is not None:
                raise AlreadyRecording()

            session = RecordingSession(max_duration=max_duration)
            session.thread = threading.Thread(
                target=self._capture_worker,
                args=(session,),
                name="resident-voice-capture",
                daemon=True,
            )
            self._session = session
            self._update_markers("mark_recording", session.started_at)
            session.thread.start()

        logger.info(f"Starting background recording (max {max_duration}s)")
        return session

    def stop(self, transcribe: TranscribeFn) -> str:
        """
        Recording -> Processing -> Idle

        Signals the capture thread, waits for it, then hands the samples to
        ``transcribe``. The session returns to Idle whatever the outcome.

        Raises:
            NotRecording: If no session is recording
            CaptureEmpty: If the capture produced zero samples
        """
        with self._lock.hold():
            session = self._session
            if session is None or session.state != SessionState.RECORDING:
                raise NotRecording()
            logger.info("Stop requested - signaling recording thread")
            session.token.request_stop()
            session.state = SessionState.PROCESSING
            self._update_markers("mark_processing")

        try:
            samples = self._join(session)
            logger.info(f"Captured {len(samples)} samples")
            if len(samples) == 0:
                raise CaptureEmpty()
            return transcribe(samples)
        finally:
            self._finish(session, "clear_processing")

    def cancel(self) -> bool:
        """
        Recording -> Idle, discarding audio

        Returns:
            True if a recording was cancelled, False if there was nothing
            to cancel
        """
        with self._lock.hold():
            session = self._session
            if session is None or session.state != SessionState.RECORDING:
                return False
            logger.info("Cancel requested - discarding recording")
            session.token.request_stop(discard=True)

        try:
            self._join(session)
        except VoiceDaemonError as e:
            logger.debug(f"Ignoring capture error on cancel: {e}")
        finally:
            self._finish(session, "clear_recording")
        return True

    def _capture_worker(self, session: RecordingSession) -> None:
        try:
            session.samples = self._capture(session.token, session.max_duration)
        except Exception as e:
            logger.error(f"Recording worker error: {e}")
            session.error = e

    def _join(self, session: RecordingSession) -> np.ndarray:
        if session.thread is not None:
            session.thread.join()

        error = session.error
        if isinstance(error, VoiceDaemonError):
            raise error
        if error is not None:
            raise TranscriptionFailure(f"Recording thread failed: {error}") from error

        if session.samples is None:
            return np.zeros(0, dtype=np.float32)
        return session.samples

    def _finish(self, session: RecordingSession, marker_update: str) -> None:
        with self._lock.hold():
            if self._session is session:
                self._session = None
            self._update_markers(marker_update)

    def _update_markers(self, method: str, *args) -> None:
        if self._markers is None:
            return
        try:
            getattr(self._markers, method)(*args)
        except OSError as e:
            logger.warning(f"Could not update state marker ({method}): {e}")
