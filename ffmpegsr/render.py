"""Status view: rich renderables for the current recording state."""

from datetime import datetime

from rich.console import Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import probe


def format_elapsed(started_at, now=None):
    """mm:ss since started_at (hh:mm:ss past an hour)."""
    if started_at is None:
        return "00:00"
    now = now or datetime.now()
    secs = max(int((now - started_at).total_seconds()), 0)
    hours, rest = divmod(secs, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


def status_tag(status, now=None):
    if status.active:
        return Text(f"● REC {format_elapsed(status.started_at, now)}", style="bold red")
    return Text("○ Idle", style="dim")


def build_status_view(status, prefs, backend, log_path, log_lines, now=None):
    """Metadata table plus log tail, like a recorder dashboard."""
    meta = Table.grid(padding=(0, 2))
    meta.add_column(style="bold")
    meta.add_column()

    meta.add_row("Status", status_tag(status, now))
    meta.add_row("Output", str(prefs.resolved_output_dir()))
    meta.add_row("Backend", backend.name)
    meta.add_row("FPS", backend.fps(prefs))
    if backend.name == "x11":
        meta.add_row("Display", probe.resolve_display_target(prefs.display))
        meta.add_row("Audio", prefs.audio_device or "default")
    else:
        meta.add_row("Input", prefs.input_device or "1")
        meta.add_row("Audio", prefs.audio_device or "0")
    meta.add_row("Log", str(log_path))
    meta.add_row("PID", str(status.pid) if status.pid else "—")

    title = "🔴 Recording" if status.active else "⚫ Ready to Record"
    log = Panel(Text("\n".join(log_lines)), title="Log", title_align="left", border_style="dim")
    return Panel(Group(meta, log), title=title, title_align="left")
