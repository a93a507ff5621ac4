"""Capture engine: ffmpeg argument strategies and detached process control."""

import logging
import os
import re
import shlex
import signal
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from . import probe
from .config import ConfigError, Preferences

logger = logging.getLogger(__name__)

_RESOLUTION_RE = re.compile(r"^\d+x\d+$")

# Seconds of slack between process creation and marker mtime (clock granularity)
PID_REUSE_TOLERANCE = 2.0


@dataclass
class Invocation:
    """A fully resolved recorder command line."""

    command: List[str]
    output_file: Path
    env: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, str] = field(default_factory=dict)

    def command_line(self):
        return shlex.join(self.command)


class CaptureBackend(ABC):
    """One way of turning Preferences into an ffmpeg command line."""

    name = ""
    default_fps = "30"

    def fps(self, prefs: Preferences) -> str:
        return prefs.fps.strip() or self.default_fps

    @abstractmethod
    def build_args(self, prefs: Preferences, output_file: Path) -> List[str]:
        """ffmpeg arguments, without the binary itself."""

    def env_overrides(self, prefs: Preferences) -> Dict[str, str]:
        return {}

    def details(self, prefs: Preferences) -> Dict[str, str]:
        """Extra key/values written to the log header."""
        return {}

    def validate(self, prefs: Preferences):
        fps = self.fps(prefs)
        try:
            valid_fps = float(fps) > 0
        except ValueError:
            valid_fps = False
        if not valid_fps:
            raise ConfigError(f"Invalid fps: {fps!r}")

        resolution = prefs.resolution.strip()
        if resolution and not _RESOLUTION_RE.match(resolution):
            raise ConfigError(f"Invalid resolution: {resolution!r} (expected WIDTHxHEIGHT)")

        if not prefs.ffmpeg_bin.strip():
            raise ConfigError("ffmpeg_bin must not be empty")

    def build_invocation(self, prefs: Preferences, output_file: Path) -> Invocation:
        self.validate(prefs)
        command = [prefs.ffmpeg_bin.strip()] + self.build_args(prefs, output_file)
        return Invocation(
            command=command,
            output_file=output_file,
            env=self.env_overrides(prefs),
            details=self.details(prefs),
        )


class X11Capture(CaptureBackend):
    """Linux: x11grab for video, PulseAudio for sound."""

    name = "x11"
    default_fps = "60"

    def display(self, prefs):
        return probe.resolve_display_target(prefs.display)

    def resolution(self, prefs, display):
        return prefs.resolution.strip() or probe.resolve_resolution(display)

    def build_args(self, prefs, output_file):
        display = self.display(prefs)
        return [
            "-y",
            "-f", "x11grab",
            "-framerate", self.fps(prefs),
            "-s", self.resolution(prefs, display),
            "-i", f"{display}.0+0,0",
            "-f", "pulse",
            "-i", prefs.audio_device.strip() or "default",
            "-vcodec", "libx264",
            "-preset", "ultrafast",
            "-pix_fmt", "yuv420p",
            "-acodec", "aac",
            "-b:a", "128k",
            str(output_file),
        ]

    def env_overrides(self, prefs):
        return {"DISPLAY": self.display(prefs)}

    def details(self, prefs):
        return {"DISPLAY": self.display(prefs)}


class AVFoundationCapture(CaptureBackend):
    """macOS: AVFoundation with a combined "video:audio" device index."""

    name = "avfoundation"
    default_fps = "30"

    def build_args(self, prefs, output_file):
        args = [
            "-f", "avfoundation",
            "-framerate", self.fps(prefs),
            "-capture_cursor", "1",
        ]
        if prefs.resolution.strip():
            args += ["-video_size", prefs.resolution.strip()]
        video = prefs.input_device.strip() or "1"
        audio = prefs.audio_device.strip() or "0"
        args += [
            "-i", f"{video}:{audio}",
            "-vcodec", "libx264",
            "-preset", "ultrafast",
            "-pix_fmt", "yuv420p",
            "-acodec", "aac",
            str(output_file),
        ]
        return args


BACKENDS = {
    X11Capture.name: X11Capture,
    AVFoundationCapture.name: AVFoundationCapture,
}


def select_backend(name=None, platform=None) -> CaptureBackend:
    """Pick a backend by name, or by platform when no name is configured."""
    if name and name.strip():
        try:
            return BACKENDS[name.strip().lower()]()
        except KeyError:
            raise ConfigError(
                f"Unknown backend: {name}. Use one of: {', '.join(BACKENDS)}"
            )

    platform = platform or sys.platform
    if platform == "darwin":
        return AVFoundationCapture()
    return X11Capture()


def spawn_detached(invocation: Invocation, log_file: Path) -> subprocess.Popen:
    """Launch the recorder in its own session with output appended to log_file.

    The child outlives the calling process. Raises OSError if it cannot be
    executed.
    """
    env = dict(os.environ)
    env.update(invocation.env)

    with open(log_file, "ab") as log:
        proc = subprocess.Popen(
            invocation.command,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=log,
            env=env,
            preexec_fn=os.setsid,  # New session so the recorder survives our exit
        )
    logger.info("Recorder started (PID %s): %s", proc.pid, invocation.command_line())
    return proc


def _reap(pid):
    # A finished child of ours stays a zombie (and looks alive) until waited on
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass


def is_process_alive(pid: int) -> bool:
    """Signal-0 existence check, zombies count as gone. Never terminates anything."""
    if pid <= 0:
        return False
    _reap(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True

    # An exited recorder we are not the parent of lingers as a zombie
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def send_signal(pid: int, sig: int) -> bool:
    """Send `sig` to pid. Returns False if the process is already gone.

    PermissionError propagates: the process exists but is not ours.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    logger.debug("Sent %s to PID %s", signal.Signals(sig).name, pid)
    return True


def wait_for_exit(pid: int, timeout: float, poll_interval: float = 0.1) -> bool:
    """Poll until pid is gone or timeout expires. True if it exited."""
    deadline = time.monotonic() + max(timeout, 0)
    while True:
        if not is_process_alive(pid):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(poll_interval)


def kill_process(pid: int, sig: int = signal.SIGINT, timeout: float = 5.0) -> Optional[bool]:
    """Graceful stop with forced fallback.

    Returns None if the process was already gone, False if it exited on
    `sig`, True if SIGKILL was needed. Raises TimeoutError if it survives
    SIGKILL.
    """
    if not send_signal(pid, sig):
        return None
    if wait_for_exit(pid, timeout):
        return False

    logger.warning("PID %s ignored %s for %ss, sending SIGKILL", pid, signal.Signals(sig).name, timeout)
    if not send_signal(pid, signal.SIGKILL):
        return True
    if wait_for_exit(pid, 2.0):
        return True
    raise TimeoutError(f"PID {pid} survived SIGKILL")


def is_reused_pid(pid: int, marked_at: float, tolerance: float = PID_REUSE_TOLERANCE) -> bool:
    """True if pid now belongs to a process created after the marker was written.

    The recorder is always created before its marker, so a later creation
    time means the original process died and the pid was handed out again.
    """
    try:
        created = psutil.Process(pid).create_time()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return False
    return created > marked_at + tolerance
