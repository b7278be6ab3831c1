#!/usr/bin/env python3
"""
OrbitDrop CLI

Command-line interface for room-code file transfer.

Usage:
    orbitdrop create [--send FILE]     # Create a room and print its code
    orbitdrop join CODE [--send FILE]  # Join a room by code or share link
    orbitdrop create --manual          # Exchange tokens by copy/paste instead
    orbitdrop history                  # List completed transfers
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import Config, load_config
from .endpoint import Endpoint
from .errors import ConnectionLost, OrbitError
from .insight import format_size
from .session.coordinator import ConnectionState
from .session.events import ErrorRaised, StatusChanged, TransferUpdated
from .signaling.bus import MemoryBus
from .storage.history import HistoryStore
from .transfer.records import Direction, TransferStatus

console = Console()

MANUAL_NEGOTIATION_TIMEOUT = 300.0


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Configure logging with rich output; -v overrides the configured level."""
    level = logging.DEBUG if verbose else level_name.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(), help='JSON config file')
@click.option('--data-dir', default=None, help='Data directory')
@click.option('--host', default=None, help='Address the channel listener binds')
@click.option('--port', default=None, type=int, help='Channel listener port (0 = any)')
@click.option('--broadcast-port', default=None, type=int, help='LAN signaling UDP port')
@click.pass_context
def cli(ctx, verbose, config_path, data_dir, host, port, broadcast_port):
    """OrbitDrop - send files to a peer who knows your room code."""
    ctx.ensure_object(dict)

    config = load_config(Path(config_path) if config_path else None)
    setup_logging(verbose, config.log_level)
    if data_dir:
        config.data_dir = Path(data_dir)
    if host:
        config.host = host
    if port is not None:
        config.port = port
    if broadcast_port is not None:
        config.broadcast_port = broadcast_port
    ctx.obj['config'] = config


def session_options(func):
    """Options shared by `create` and `join`."""
    func = click.option('--send', 'send_files', multiple=True,
                        type=click.Path(exists=True, dir_okay=False),
                        help='File to send once connected (repeatable)')(func)
    func = click.option('--manual', is_flag=True,
                        help='Exchange signaling tokens by copy/paste')(func)
    func = click.option('--api-port', default=None, type=int,
                        help='Serve the REST API on this port')(func)
    func = click.option('--timeout', default=120.0, show_default=True,
                        help='Seconds to wait for the peer')(func)
    return func


@cli.command()
@click.option('--room', 'room_id', default=None, help='Use this room code instead of a random one')
@session_options
@click.pass_context
def create(ctx, room_id, send_files, manual, api_port, timeout):
    """Create a room as the initiating side."""
    run_session(ctx.obj['config'], None, room_id, send_files, manual, api_port, timeout)


@cli.command()
@click.argument('code')
@session_options
@click.pass_context
def join(ctx, code, send_files, manual, api_port, timeout):
    """Join a room by its code or share link."""
    run_session(ctx.obj['config'], code, None, send_files, manual, api_port, timeout)


@cli.command()
@click.pass_context
def history(ctx):
    """List completed transfers."""
    config: Config = ctx.obj['config']

    async def run():
        store = HistoryStore(config.history_path, config.history_limit)
        await store.connect()
        try:
            entries = await store.list_entries()
        finally:
            await store.close()

        if not entries:
            console.print("[yellow]No transfers yet[/yellow]")
            return

        table = Table(title="Transfer History")
        table.add_column("Name", style="cyan")
        table.add_column("Size", justify="right", style="yellow")
        table.add_column("Direction")
        table.add_column("Insight", style="green")

        for entry in entries:
            table.add_row(
                entry.name,
                format_size(entry.size),
                entry.direction,
                entry.insight or "",
            )

        console.print(table)

    asyncio.run(run())


def run_session(config: Config, join_code: Optional[str], room_id: Optional[str],
                send_files: Tuple[str, ...], manual: bool,
                api_port: Optional[int], timeout: float):
    """Pair with the peer, send any files, then stay up to receive."""
    if manual:
        # Tokens are copied by hand while the negotiation timer runs
        config.negotiation_timeout = max(config.negotiation_timeout,
                                         MANUAL_NEGOTIATION_TIMEOUT)

    async def run():
        # Manual mode never publishes off-process; tokens carry the descriptors
        endpoint = Endpoint(config, bus=MemoryBus() if manual else None)
        endpoint.events.add_listener(print_event)

        try:
            await endpoint.start()

            if join_code is None:
                code = await endpoint.create_room(room_id)
                console.print(Panel.fit(
                    f"[bold green]Room Created[/bold green]\n\n"
                    f"Room code (share this): [bold cyan]{code}[/bold cyan]\n"
                    f"Data Dir: [blue]{config.data_dir}[/blue]",
                    title="OrbitDrop"
                ))
            else:
                code = await endpoint.join_room(join_code)
                console.print(f"[green]Joined room[/green] [bold cyan]{code}[/bold cyan]")

            if manual:
                await exchange_tokens(endpoint, join_code is None)

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task("Waiting for peer...", total=None)
                await endpoint.wait_open(timeout)

            for file_path in send_files:
                await send_with_progress(endpoint, Path(file_path))

            if api_port:
                console.print(f"\n[dim]REST API available at http://localhost:{api_port}[/dim]")
                console.print(f"[dim]API docs at http://localhost:{api_port}/docs[/dim]\n")

                from .api import run_api_server
                await run_api_server(endpoint, port=api_port)
            else:
                console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
                while endpoint.state is not ConnectionState.CLOSED:
                    await asyncio.sleep(1)

        except asyncio.TimeoutError:
            console.print(f"[red]Peer did not connect within {timeout:.0f}s[/red]")
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
        except OrbitError as e:
            console.print(f"[red]{e}[/red]")
        except KeyboardInterrupt:
            console.print("\n[yellow]Shutting down...[/yellow]")
        finally:
            await endpoint.stop()
            console.print("[green]Endpoint stopped[/green]")

    asyncio.run(run())


async def exchange_tokens(endpoint: Endpoint, initiator: bool):
    """Copy/paste signaling: offer out, answer in (or the reverse)."""
    if initiator:
        token = await endpoint.export_token()
        console.print(Panel(token, title="Offer token (send to your peer)"))
        answer = await asyncio.to_thread(console.input, "Paste the answer token: ")
        await endpoint.import_token(answer.strip())
    else:
        offer = await asyncio.to_thread(console.input, "Paste the offer token: ")
        await endpoint.import_token(offer.strip())
        token = await endpoint.export_token()
        console.print(Panel(token, title="Answer token (send to your peer)"))


async def send_with_progress(endpoint: Endpoint, file_path: Path):
    """Send one file with a progress bar."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task(f"Sending {file_path.name}", total=100)

        def update_progress(record):
            description = f"Sending {record.name}"
            if record.status is TransferStatus.PAUSED:
                description += " (paused)"
            progress.update(task, completed=record.progress_percent, description=description)

        try:
            record = await endpoint.send_file(file_path, progress_callback=update_progress)
        except ConnectionLost as e:
            console.print(f"\n[red]✗ {file_path.name} failed: {e}[/red]")
            return

    console.print(f"[green]✓ Sent {record.name} ({format_size(record.total_size)})[/green]")


def print_event(event):
    """Echo connection changes and finished inbound transfers."""
    if isinstance(event, StatusChanged):
        color = 'green' if event.usable else 'yellow'
        console.print(f"[{color}]● {event.label}[/{color}]")

    elif isinstance(event, ErrorRaised):
        console.print(f"[red]{event.context}: {event.error}[/red]")

    elif isinstance(event, TransferUpdated):
        record = event.record
        if record.direction is not Direction.INBOUND:
            return
        if record.status is TransferStatus.COMPLETED and record.insight is not None:
            console.print(Panel.fit(
                f"[bold green]Received {record.name}[/bold green]\n\n"
                f"Size: [yellow]{format_size(record.total_size)}[/yellow]\n"
                f"Saved to: [blue]{record.local_path}[/blue]\n"
                f"[dim]{record.insight}[/dim]",
                title="Transfer Complete"
            ))
        elif record.status is TransferStatus.FAILED:
            console.print(f"[red]✗ {record.name}: {record.error}[/red]")


if __name__ == '__main__':
    cli()
