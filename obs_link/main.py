"""
main.py — obs-link command line.

A thin consumer of the core, handy for checking a setup before wiring a
control surface to it.

CLI:
  python run.py watch               connect and print every OBS change
  python run.py check               connect, print a state summary, exit
  python run.py init-config         create a default config.yaml
  python run.py key encode A B C D  build a parameter key
  python run.py key decode KEY      split a parameter key
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from obs_link import __version__
from obs_link.config import Settings, reload_settings
from obs_link.core.errors import KeyCodecError
from obs_link.core.keys import EntityRef, decode, encode
from obs_link.core.supervisor import ConnectionStatusEvent, HealthStatus
from obs_link.events import DomainEvent
from obs_link.link import OBSLink
from obs_link.state.cache import Field, StateKey

console = Console()
app = typer.Typer(name="obs-link", help="OBS state sync core for control surfaces")
key_app = typer.Typer(help="Encode/decode parameter keys")
app.add_typer(key_app, name="key")

_STATUS_STYLE = {
    HealthStatus.NORMAL: "green",
    HealthStatus.WARNING: "yellow",
    HealthStatus.ERROR: "red",
}


def setup_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _apply_overrides(host: Optional[str], port: Optional[int], password: Optional[str]) -> None:
    if host:
        os.environ["OBS_HOST"] = host
    if port:
        os.environ["OBS_PORT"] = str(port)
    if password:
        os.environ["OBS_PASSWORD"] = password


def _print_status(event: ConnectionStatusEvent) -> None:
    style = _STATUS_STYLE[event.status]
    reason = f" [dim]({event.reason})[/dim]" if event.reason else ""
    console.print(f"[{style}]● {event.state.value}[/{style}]{reason}")


def _print_event(event: DomainEvent) -> None:
    extra = ", ".join(f"{k}={v}" for k, v in event.data.items() if v not in (None, "", []))
    console.print(
        f"[cyan]{event.category.value:<30}[/cyan] "
        f"{str(event.ref or ''):<30} [bold]{event.value!r}[/bold]"
        + (f" [dim]{extra}[/dim]" if extra else "")
    )


# ──────────────────────────────────────────────────────────────────────────────
# Async bodies
# ──────────────────────────────────────────────────────────────────────────────

async def run_watch(settings: Settings) -> None:
    link = OBSLink.from_settings(settings.obs)
    status_sub = link.supervisor.on_state_changed(_print_status)
    event_sub = link.events.subscribe_all(_print_event)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    console.rule(f"[bold blue]obs-link v{__version__}[/bold blue] → {link.supervisor.endpoint}")
    await link.start()
    try:
        await stop.wait()
    finally:
        event_sub.cancel()
        status_sub.cancel()
        await link.close()


async def run_check(settings: Settings, settle: float) -> bool:
    link = OBSLink.from_settings(settings.obs)
    await link.start()
    try:
        if not await link.wait_connected():
            console.print(f"[red]✗ Could not connect to OBS at {link.supervisor.endpoint}[/red]"
                          f" — {link.supervisor.last_error or 'unknown error'}")
            return False
        # Refresh responses arrive asynchronously
        await asyncio.sleep(settle)
        _print_summary(link)
        return True
    finally:
        await link.close()


def _print_summary(link: OBSLink) -> None:
    cache = link.state
    console.print(f"[green]✓ Connected to OBS[/green] at {link.supervisor.endpoint}")
    console.print(f"  Scene collection: {cache.current_collection or '-'}")
    console.print(f"  Program scene:    {cache.program_scene or '-'}")

    outputs = Table(title="Outputs", show_header=True)
    outputs.add_column("Output", style="cyan")
    outputs.add_column("Active")
    for label, field in (
        ("Streaming", Field.STREAMING),
        ("Recording", Field.RECORDING),
        ("Record paused", Field.RECORD_PAUSED),
        ("Replay buffer", Field.REPLAY_BUFFER),
        ("Virtual cam", Field.VIRTUAL_CAM),
        ("Studio mode", Field.STUDIO_MODE),
    ):
        value = cache.get(StateKey.singleton(field))
        outputs.add_row(label, "-" if value is None else ("yes" if value else "no"))
    console.print(outputs)

    scenes = cache.scenes()
    console.print(f"  Scenes ({len(scenes)}): {', '.join(scenes)}")

    inputs = Table(title="Inputs", show_header=True)
    inputs.add_column("Input", style="cyan")
    inputs.add_column("Kind")
    inputs.add_column("Muted")
    inputs.add_column("Volume (dB)", justify="right")
    for name, kind in sorted(cache.inputs().items()):
        ref = EntityRef(source_name=name)
        muted = cache.get(StateKey.muted(ref))
        volume = cache.get(StateKey.volume(ref))
        inputs.add_row(
            name,
            kind,
            "-" if muted is None else ("yes" if muted else "no"),
            "-" if volume is None else f"{volume:.1f}",
        )
    console.print(inputs)


# ──────────────────────────────────────────────────────────────────────────────
# CLI commands
# ──────────────────────────────────────────────────────────────────────────────

@app.command()
def watch(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    host: Optional[str] = typer.Option(None, "--host", help="OBS WebSocket host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="OBS WebSocket port"),
    password: Optional[str] = typer.Option(None, "--password", help="OBS WebSocket password"),
):
    """Connect and print every state change until interrupted."""
    _apply_overrides(host, port, password)
    settings = reload_settings(config)
    setup_logging(settings.log.level)
    asyncio.run(run_watch(settings))


@app.command("check")
def check_obs(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    password: Optional[str] = typer.Option(None, "--password"),
    attempts: int = typer.Option(3, "--attempts", help="Startup probe attempts"),
    settle: float = typer.Option(1.0, "--settle", help="Seconds to wait for the state refresh"),
):
    """Test OBS connectivity and print what the cache sees."""
    _apply_overrides(host, port, password)
    settings = reload_settings(config)
    settings.obs.probe_attempts = attempts
    setup_logging("warning")
    if not asyncio.run(run_check(settings, settle)):
        sys.exit(1)


@app.command("init-config")
def init_config(
    output: Path = typer.Option(Path("config.yaml"), "--output", "-o"),
):
    """Generate a default config.yaml."""
    s = Settings.load(output)
    s.to_yaml(output)
    console.print(f"[green]✓[/green] Config written to [bold]{output}[/bold]")


@key_app.command("encode")
def key_encode(levels: List[str] = typer.Argument(..., help="Levels, outermost first")):
    """Join levels into a parameter key."""
    try:
        console.print(encode(levels), markup=False, highlight=False)
    except KeyCodecError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        sys.exit(1)


@key_app.command("decode")
def key_decode(
    key: str = typer.Argument(...),
    ref: bool = typer.Option(False, "--ref", help="Decode as a 4-level entity reference"),
):
    """Split a parameter key back into its levels."""
    try:
        if ref:
            console.print(repr(EntityRef.from_key(key)), markup=False, highlight=False)
        else:
            for level in decode(key):
                console.print(level, markup=False, highlight=False)
    except KeyCodecError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    app()
