"CLI layer: Typer commands for toggle, start, stop, status, log, open, config."

import logging
import subprocess
import sys
import time

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from . import config as config_module
from . import render
from .capture import select_backend
from .config import ConfigError, load_preferences
from .session import (
    AlreadyRecordingError,
    RecorderError,
    RecordingSupervisor,
    SpawnError,
    StopError,
)

app = typer.Typer(help="ffmpegsr: record the screen with ffmpeg, one recording at a time")
console = Console()
err_console = Console(stderr=True)

SETTLE_SECONDS = 0.8


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _load():
    """Preferences and a supervisor for the configured backend."""
    prefs = load_preferences()
    supervisor = RecordingSupervisor(select_backend(prefs.backend))
    return prefs, supervisor


def _print_log(lines):
    for line in lines:
        console.print(line, markup=False, highlight=False)


def _report_stop(result, prefs):
    if not result.stopped:
        console.print("[dim]No active recording[/dim]")
        return
    if result.forced:
        console.print(f"[yellow]⚠ Could not signal PID {result.pid}, cleared the recording state anyway[/yellow]")
        return
    if result.escalated:
        console.print("[yellow]⚠ ffmpeg did not exit in time and was killed; the output file is probably unplayable[/yellow]")
    console.print(f"[green]⏹ Recording stopped, saved to {prefs.resolved_output_dir()}[/green]")


@app.command()
def toggle():
    """Start a recording, or stop the one in progress."""
    try:
        prefs, supervisor = _load()
        status = supervisor.get_status()

        if status.active:
            result = supervisor.stop(timeout=prefs.stop_timeout)
            _report_stop(result, prefs)
        else:
            session = supervisor.start(prefs)
            console.print(f"[red]🔴 Recording started[/red] [dim](PID {session.pid})[/dim]")
            console.print(f"[dim]Recording to: {session.output_file}[/dim]")

    except (RecorderError, ConfigError) as e:
        console.print(f"[red]❌ Failed: {escape(str(e))}[/red]")
        raise typer.Exit(1)


@app.command()
def start(
    settle: float = typer.Option(SETTLE_SECONDS, "--settle", help="Seconds to wait before confirming ffmpeg is still running"),
):
    """Start a new recording."""
    try:
        prefs, supervisor = _load()
        session = supervisor.start(prefs)
    except AlreadyRecordingError as e:
        console.print(f"[yellow]{escape(str(e))}[/yellow]")
        raise typer.Exit(1)
    except SpawnError as e:
        console.print(f"[red]❌ Failed to start: {escape(str(e))}[/red]")
        console.print(f"[dim]See log: {supervisor.log_path}[/dim]")
        raise typer.Exit(1)
    except (RecorderError, ConfigError) as e:
        console.print(f"[red]❌ Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    # ffmpeg rejects bad devices after launching, so check it is still alive
    if settle > 0:
        time.sleep(settle)
    status = supervisor.get_status()
    if not status.active:
        console.print("[red]❌ Failed to start: ffmpeg exited right away[/red]")
        _print_log(supervisor.tail_log(prefs.log_lines))
        raise typer.Exit(1)

    console.print(f"[red]🔴 Recording started[/red] [dim](PID {session.pid})[/dim]")
    console.print(f"[dim]Recording to: {session.output_file}[/dim]")
    console.print("[yellow]Run 'ffmpegsr stop' when done.[/yellow]")


@app.command()
def stop(
    force: bool = typer.Option(False, "--force", help="Clear the recording state even if ffmpeg cannot be signalled"),
    timeout: float = typer.Option(None, "--timeout", help="Seconds to wait for ffmpeg to finish before killing it"),
):
    """Stop the active recording."""
    try:
        prefs, supervisor = _load()
        result = supervisor.stop(
            timeout=prefs.stop_timeout if timeout is None else timeout,
            force=force,
        )
    except StopError as e:
        console.print(f"[red]❌ {escape(str(e))}. Use --force to clear the recording state anyway[/red]")
        raise typer.Exit(1)
    except (RecorderError, ConfigError) as e:
        console.print(f"[red]❌ Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    _report_stop(result, prefs)


@app.command()
def status(
    lines: int = typer.Option(None, "--lines", "-n", help="Number of log lines to show"),
):
    """Show recording status, settings and the latest ffmpeg output."""
    try:
        prefs, supervisor = _load()
        current = supervisor.get_status()
    except (RecorderError, ConfigError) as e:
        console.print(f"[red]❌ Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    log_lines = supervisor.tail_log(prefs.log_lines if lines is None else lines)
    console.print(render.build_status_view(current, prefs, supervisor.backend, supervisor.log_path, log_lines))


@app.command()
def log(
    lines: int = typer.Option(None, "--lines", "-n", help="Number of log lines to show"),
):
    """Print the tail of the ffmpeg log."""
    try:
        prefs, supervisor = _load()
    except ConfigError as e:
        console.print(f"[red]❌ Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    _print_log(supervisor.tail_log(prefs.log_lines if lines is None else lines))


@app.command("open")
def open_folder():
    """Open the output folder in the file manager."""
    prefs = load_preferences()
    output_dir = prefs.resolved_output_dir()
    output_dir.mkdir(parents=True, exist_ok=True)

    opener = "open" if sys.platform == "darwin" else "xdg-open"
    try:
        subprocess.run([opener, str(output_dir)], check=False)
    except OSError as e:
        console.print(f"[red]❌ Could not run {opener}: {escape(str(e))}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✅ Opened folder: {output_dir}[/green]")


@app.command()
def config(
    key: str = typer.Argument(..., help=f"Config key: {', '.join(config_module.KEYS)}"),
    value: str = typer.Argument(None, help="Value to set (omit to get current value)"),
):
    """Get or set configuration values."""
    try:
        if value is None:
            current = config_module.get_value(key)
            console.print(f"{key}: {current if current is not None else 'not set'}")
        else:
            stored = config_module.set_value(key, value)
            console.print(f"[green]✅ Set {key} to {stored}[/green]")
    except ConfigError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
