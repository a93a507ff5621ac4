"""
Test Configuration and Fixtures

Shared fixtures for supervisor, capture and CLI tests. Real recordings are
replaced by a sleeping Python child launched through sys.executable, so the
whole lifecycle (detach, marker, signals, log) is exercised without ffmpeg.
"""

import sys
import time

import pytest

from ffmpegsr.capture import CaptureBackend
from ffmpegsr.config import Preferences
from ffmpegsr.session import RecordingSupervisor

# Print a line once the SIGINT disposition is in place, then idle. The token is
# built at runtime so it never matches the command line in the log header.
SLEEPER_SCRIPT = (
    "import sys, time\n"
    "print('READY'.lower(), flush=True)\n"
    "time.sleep(60)\n"
)

STUBBORN_SCRIPT = (
    "import signal, time\n"
    "signal.signal(signal.SIGINT, signal.SIG_IGN)\n"
    "print('READY'.lower(), flush=True)\n"
    "time.sleep(60)\n"
)


class ScriptCapture(CaptureBackend):
    """Runs a Python snippet instead of ffmpeg (use with ffmpeg_bin=sys.executable)."""

    name = "script"
    default_fps = "30"

    def __init__(self, script=SLEEPER_SCRIPT):
        self.script = script

    def build_args(self, prefs, output_file):
        return ["-c", self.script, str(output_file)]


def wait_for_log(supervisor, text, timeout=10.0):
    """Block until `text` shows up in the supervisor's log."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if supervisor.log_path.exists() and text in supervisor.log_path.read_text(errors="replace"):
            return True
        time.sleep(0.05)
    return False


# =============================================================================
# DIRECTORY FIXTURES
# =============================================================================


@pytest.fixture
def state_dir(tmp_path):
    """Directory holding the marker, lock and log files."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def output_dir(tmp_path):
    """Output directory for recordings (not created on purpose)."""
    return tmp_path / "out" / "nested"


# =============================================================================
# PREFERENCES / BACKEND FIXTURES
# =============================================================================


@pytest.fixture
def prefs(output_dir):
    return Preferences(
        output_dir=str(output_dir),
        fps="30",
        ffmpeg_bin=sys.executable,
        stop_timeout=2.0,
    )


@pytest.fixture
def script_backend():
    return ScriptCapture()


@pytest.fixture
def stubborn_backend():
    return ScriptCapture(STUBBORN_SCRIPT)


# =============================================================================
# SUPERVISOR FIXTURES
# =============================================================================


@pytest.fixture
def supervisor(script_backend, state_dir):
    """
    Provide RecordingSupervisor backed by the sleeping script.

    Any recording left running by the test is stopped afterwards.
    """
    sup = RecordingSupervisor(script_backend, state_dir=state_dir)
    yield sup
    sup.stop(timeout=1.0, force=True)


@pytest.fixture
def stubborn_supervisor(stubborn_backend, state_dir):
    """RecordingSupervisor whose child ignores SIGINT."""
    sup = RecordingSupervisor(stubborn_backend, state_dir=state_dir)
    yield sup
    sup.stop(timeout=0.5, force=True)


@pytest.fixture
def log_waiter():
    """
    Provide wait_for_log(supervisor, text, timeout=10.0).

    Usage:
        def test_ready(supervisor, prefs, log_waiter):
            supervisor.start(prefs)
            assert log_waiter(supervisor, "ready")
    """
    return wait_for_log


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """
    Configure pytest with custom markers.
    """
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Tests that launch real child processes")
