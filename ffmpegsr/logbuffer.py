"""Log buffer: the recorder's combined output, with a header per session."""

import logging
import re
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

NO_LOG_PLACEHOLDER = "_No log yet. Start a recording to see ffmpeg output here._"
EMPTY_LOG_PLACEHOLDER = "_Log is empty_"
UNREADABLE_LOG_PLACEHOLDER = "_Could not read log_"

OUTPUT_MARKER = "--- FFMPEG OUTPUT ---"

_OSC_ESCAPE = re.compile(r"\x1B\].*?(?:\x07|\x1B\\)")
_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def clean_line(line):
    """Strip escape codes and keep only what a terminal would show.

    ffmpeg rewrites its progress line in place with carriage returns, so
    only the text after the last non-trailing \\r is kept.
    """
    line = _OSC_ESCAPE.sub("", line)
    line = _ANSI_ESCAPE.sub("", line)
    line = line.rstrip("\r\n")
    if "\r" in line:
        line = line.rsplit("\r", 1)[-1]
    return line


class LogBuffer:
    """Plain-text log file, truncated at session start and appended to by ffmpeg."""

    def __init__(self, path):
        self.path = Path(path)

    def reset(self, invocation):
        """Truncate the log and write the session header."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"CMD: {invocation.command_line()}"]
        for key, value in invocation.details.items():
            lines.append(f"{key}: {value}")
        lines.append(f"OUTPUT: {invocation.output_file}")
        lines.append("")
        lines.append(OUTPUT_MARKER)

        with open(self.path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

    def append(self, text):
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(text)

    def tail(self, max_lines=25) -> List[str]:
        """Last `max_lines` lines in file order, or a one-line placeholder.

        Never raises.
        """
        if max_lines <= 0:
            return []

        try:
            if not self.path.exists():
                return [NO_LOG_PLACEHOLDER]
            # newline="" keeps bare \r so progress updates collapse in clean_line
            with open(self.path, "r", encoding="utf-8", errors="replace", newline="") as f:
                raw = f.read().split("\n")
        except OSError as e:
            logger.debug("Could not read log %s: %s", self.path, e)
            return [UNREADABLE_LOG_PLACEHOLDER]

        lines = [clean_line(line) for line in raw]
        while lines and not lines[-1].strip():
            lines.pop()
        while lines and not lines[0].strip():
            lines.pop(0)
        if not lines:
            return [EMPTY_LOG_PLACEHOLDER]
        return lines[-max_lines:]
