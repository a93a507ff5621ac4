"""Environment probe: display target and screen resolution for capture."""

import logging
import os
import re
import subprocess

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY = ":0"
DEFAULT_RESOLUTION = "1920x1080"
PROBE_TIMEOUT = 5

_DIMENSIONS_RE = re.compile(r"dimensions:\s+(\d+x\d+)")


def resolve_display_target(configured=None, environ=None):
    """Configured display, else $DISPLAY, else ":0"."""
    if configured and configured.strip():
        return configured.strip()
    environ = os.environ if environ is None else environ
    return environ.get("DISPLAY") or DEFAULT_DISPLAY


def resolve_resolution(display_target):
    """Ask xdpyinfo for the screen dimensions of `display_target`.

    Best effort: any failure (xdpyinfo missing, non-zero exit, timeout,
    unexpected output) falls back to DEFAULT_RESOLUTION.
    """
    env = dict(os.environ, DISPLAY=display_target)
    try:
        result = subprocess.run(
            ["xdpyinfo"],
            capture_output=True,
            text=True,
            env=env,
            timeout=PROBE_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("xdpyinfo unavailable (%s), using %s", e, DEFAULT_RESOLUTION)
        return DEFAULT_RESOLUTION

    if result.returncode != 0:
        logger.debug("xdpyinfo exited with %s, using %s", result.returncode, DEFAULT_RESOLUTION)
        return DEFAULT_RESOLUTION

    match = _DIMENSIONS_RE.search(result.stdout or "")
    if not match:
        logger.debug("No dimensions in xdpyinfo output, using %s", DEFAULT_RESOLUTION)
        return DEFAULT_RESOLUTION
    return match.group(1)
