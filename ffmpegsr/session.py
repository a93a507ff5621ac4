"""Session management: PID marker, locking, and the recording lifecycle."""

import fcntl
import logging
import os
import signal
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from . import capture
from .config import Preferences
from .logbuffer import LogBuffer

logger = logging.getLogger(__name__)

MARKER_NAME = "ffmpegsr.pid"
LOG_NAME = "ffmpegsr.log"
LOCK_NAME = "ffmpegsr.lock"


class RecorderError(RuntimeError):
    """Base class for errors surfaced to the user."""


class AlreadyRecordingError(RecorderError):
    def __init__(self, pid):
        super().__init__(f"Already recording (PID {pid}). Stop it first with: ffmpegsr stop")
        self.pid = pid


class SpawnError(RecorderError):
    """The recorder executable could not be launched."""


class StopError(RecorderError):
    """The recorder could not be stopped; the marker is kept."""


class StorageError(RecorderError):
    """The state or output directory cannot be created or written."""


@dataclass
class RecordingSession:
    pid: int
    started_at: datetime
    output_file: Path


@dataclass
class Status:
    active: bool
    pid: Optional[int] = None
    started_at: Optional[datetime] = None


@dataclass
class StopResult:
    stopped: bool
    pid: Optional[int] = None
    escalated: bool = False
    forced: bool = False


def get_state_dir():
    """Directory for the marker, lock and log files."""
    override = os.environ.get("FFMPEGSR_STATE_DIR")
    return Path(override).expanduser() if override else Path(tempfile.gettempdir())


def timestamp_slug(now=None):
    """UTC timestamp safe for filenames: 2026-10-19T07-04-05."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S").replace(":", "-")


def build_output_path(output_dir, now=None):
    """recording-<timestamp>.mp4 inside output_dir, creating the directory."""
    output_dir = Path(output_dir).expanduser()
    output_dir.mkdir(parents=True, exist_ok=True)

    stem = f"recording-{timestamp_slug(now)}"
    output_file = output_dir / f"{stem}.mp4"
    n = 1
    while output_file.exists():
        output_file = output_dir / f"{stem}-{n}.mp4"
        n += 1
    return output_file


class ProcessMarker:
    """Single file holding the recorder PID. Its presence means "recording"."""

    def __init__(self, path):
        self.path = Path(path)

    def exists(self):
        return self.path.exists()

    def read(self) -> Optional[int]:
        """PID stored in the marker, None if absent or unparseable."""
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("Could not read marker %s: %s", self.path, e)
            return None

        try:
            pid = int(content)
        except ValueError:
            return None
        return pid if pid > 0 else None

    def mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def created_at(self) -> Optional[datetime]:
        mtime = self.mtime()
        return datetime.fromtimestamp(mtime) if mtime is not None else None

    def write(self, pid):
        """Create the marker atomically. Raises FileExistsError if present."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        with os.fdopen(fd, "w") as f:
            f.write(str(pid))

    def clear(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class RecordingSupervisor:
    """Owns at most one detached recorder process per host.

    State lives in the marker file, so any short-lived caller can query or
    stop a recording started by another one. start/stop/get_status hold an
    exclusive flock for their whole duration.
    """

    def __init__(self, backend: capture.CaptureBackend, state_dir=None):
        self.backend = backend
        self.state_dir = Path(state_dir) if state_dir else get_state_dir()
        self.marker = ProcessMarker(self.state_dir / MARKER_NAME)
        self.log = LogBuffer(self.state_dir / LOG_NAME)
        self.lock_path = self.state_dir / LOCK_NAME

    @property
    def log_path(self):
        return self.log.path

    @contextmanager
    def _locked(self):
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            lock = open(self.lock_path, "a")
        except OSError as e:
            raise StorageError(f"Cannot use state directory {self.state_dir}: {e}") from e

        with lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def _owns(self, pid) -> bool:
        """pid is alive and is still the process the marker was written for."""
        if not capture.is_process_alive(pid):
            return False
        marked_at = self.marker.mtime()
        if marked_at is not None and capture.is_reused_pid(pid, marked_at):
            logger.warning("PID %s was reused by another process since the recording started", pid)
            return False
        return True

    def _check_status(self) -> Status:
        if not self.marker.exists():
            return Status(active=False)

        pid = self.marker.read()
        if pid is not None and self._owns(pid):
            return Status(active=True, pid=pid, started_at=self.marker.created_at())

        logger.debug("Removing stale marker %s (PID %s)", self.marker.path, pid)
        self.marker.clear()
        return Status(active=False)

    def get_status(self) -> Status:
        """Current status; heals a marker whose process has died."""
        with self._locked():
            return self._check_status()

    def start(self, prefs: Preferences) -> RecordingSession:
        """Launch the recorder.

        Raises AlreadyRecordingError if one is running, SpawnError if ffmpeg
        cannot be executed, ConfigError for invalid preferences, StorageError
        if the output directory, log or marker cannot be written.
        """
        with self._locked():
            status = self._check_status()
            if status.active:
                raise AlreadyRecordingError(status.pid)

            output_dir = prefs.resolved_output_dir()
            try:
                output_file = build_output_path(output_dir)
            except OSError as e:
                raise StorageError(f"Cannot create output directory {output_dir}: {e}") from e

            invocation = self.backend.build_invocation(prefs, output_file)
            try:
                self.log.reset(invocation)
            except OSError as e:
                raise StorageError(f"Cannot write log {self.log.path}: {e}") from e

            try:
                proc = capture.spawn_detached(invocation, self.log.path)
            except OSError as e:
                self.log.append(f"\nSPAWN ERROR: {e}\n")
                logger.error("Failed to launch %s: %s", invocation.command[0], e)
                raise SpawnError(f"Failed to launch {invocation.command[0]}: {e}") from e

            try:
                self.marker.write(proc.pid)
            except FileExistsError:
                # Lost a race against a caller not using our lock
                proc.kill()
                proc.wait()
                raise AlreadyRecordingError(self.marker.read())
            except OSError as e:
                # An unmarked recorder could never be stopped
                proc.kill()
                proc.wait()
                raise StorageError(f"Cannot write marker {self.marker.path}: {e}") from e

            logger.info("Recording to %s (PID %s)", output_file, proc.pid)
            return RecordingSession(
                pid=proc.pid,
                started_at=datetime.now(),
                output_file=output_file,
            )

    def stop(self, timeout=5.0, force=False) -> StopResult:
        """Interrupt the recorder so ffmpeg can finalize the file.

        Escalates to SIGKILL after `timeout` seconds. The marker is removed
        once the process is gone; if it cannot be stopped, StopError is
        raised and the marker kept, unless `force` is set.
        """
        with self._locked():
            if not self.marker.exists():
                return StopResult(stopped=False)

            pid = self.marker.read()
            if pid is None:
                self.marker.clear()
                return StopResult(stopped=True)

            if capture.is_process_alive(pid) and not self._owns(pid):
                # Recorder is long gone; never signal the unrelated process
                self.marker.clear()
                return StopResult(stopped=True, pid=pid)

            try:
                escalated = capture.kill_process(pid, signal.SIGINT, timeout=timeout)
            except (PermissionError, TimeoutError) as e:
                if not force:
                    raise StopError(f"Could not stop PID {pid}: {e}") from e
                logger.warning("Could not stop PID %s (%s), clearing marker anyway", pid, e)
                self.marker.clear()
                return StopResult(stopped=True, pid=pid, forced=True)

            self.marker.clear()
            if escalated is None:
                logger.info("PID %s was already gone", pid)
            return StopResult(stopped=True, pid=pid, escalated=bool(escalated))

    def tail_log(self, max_lines=25) -> List[str]:
        return self.log.tail(max_lines)
