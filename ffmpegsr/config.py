"""Configuration: preferences from defaults, a JSON file, and the environment."""

import json
import logging
import os
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

HOME = Path.home()
FFMPEGSR_DIR = HOME / ".ffmpegsr"
CONFIG_FILE = FFMPEGSR_DIR / "config.json"
ENV_PREFIX = "FFMPEGSR_"


class ConfigError(ValueError):
    """Invalid configuration key or value."""


def default_output_dir(platform=None):
    """Desktop on macOS, Videos everywhere else."""
    platform = platform or sys.platform
    if platform == "darwin":
        return str(HOME / "Desktop")
    return str(HOME / "Videos")


@dataclass
class Preferences:
    """Everything the recorder needs from the outside world.

    Empty strings mean "not set" so that backends can apply their own
    platform defaults (fps, devices).
    """

    output_dir: str = ""
    audio_device: str = ""
    input_device: str = ""
    fps: str = ""
    resolution: str = ""
    display: str = ""
    backend: str = ""
    ffmpeg_bin: str = "ffmpeg"
    stop_timeout: float = 5.0
    log_lines: int = 25

    def resolved_output_dir(self) -> Path:
        return Path(self.output_dir.strip() or default_output_dir()).expanduser()


KEYS = [f.name for f in fields(Preferences)]
_TYPES = {f.name: f.type for f in fields(Preferences)}


def _coerce(key, value):
    if key not in _TYPES:
        raise ConfigError(f"Invalid key: {key}. Use one of: {', '.join(KEYS)}")

    kind = _TYPES[key]
    if kind in (float, "float"):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid value for {key}: must be a number")
    if kind in (int, "int"):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid value for {key}: must be an integer")
    return str(value).strip()


def get_config_file() -> Path:
    override = os.environ.get(ENV_PREFIX + "CONFIG")
    return Path(override).expanduser() if override else CONFIG_FILE


def read_config_file(config_file=None):
    """Return the raw dict stored in the config file ({} if missing or broken)."""
    config_file = config_file or get_config_file()
    if not config_file.exists():
        return {}

    try:
        with open(config_file, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", config_file, e)
        return {}

    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", config_file)
        return {}
    return data


def load_preferences(config_file=None, environ=None) -> Preferences:
    """Build Preferences: defaults, then the config file, then FFMPEGSR_* variables."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    values = {}
    for key, value in read_config_file(config_file).items():
        if value is None:
            # JSON null means "not set"
            continue
        try:
            values[key] = _coerce(key, value)
        except ConfigError as e:
            logger.warning("Skipping config entry: %s", e)

    for key in KEYS:
        env_value = environ.get(ENV_PREFIX + key.upper())
        if env_value is None:
            continue
        try:
            values[key] = _coerce(key, env_value)
        except ConfigError as e:
            logger.warning("Skipping %s%s: %s", ENV_PREFIX, key.upper(), e)

    return Preferences(**values)


def get_value(key, config_file=None) -> Optional[object]:
    if key not in KEYS:
        raise ConfigError(f"Invalid key: {key}. Use one of: {', '.join(KEYS)}")
    return read_config_file(config_file).get(key)


def set_value(key, value, config_file=None):
    """Validate and persist a single key. Returns the stored value."""
    config_file = config_file or get_config_file()
    coerced = _coerce(key, value)

    config = read_config_file(config_file)
    config[key] = coerced

    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        json.dump(config, f, indent=2)
    logger.debug("Saved %s=%r to %s", key, coerced, config_file)
    return coerced
