"""Command-line entry points: run the broker, send and receive payloads."""
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn

from .channels import tcp_channel_factory
from .core.config import settings
from .core.errors import PinqError
from .schemas.transfer import MetadataFrame, TransferKind, TransferResult
from .services.codes import generate_code, is_valid_code, normalize_code
from .services.signaling import SignalingClient
from .services.transfer import ReceiverSession, SenderSession

PROGRESS_THRESHOLD = 1024 * 1024

console = Console(stderr=True)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with rich output."""

    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
        force=True,
    )
    # websocket frame chatter drowns out everything else at debug level
    logging.getLogger("websockets").setLevel(logging.WARNING)


def _human_size(size: int | None) -> str:
    if size is None:
        return "unknown size"
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


class ProgressReporter:
    """Progress callback that only draws a bar once the payload is known to be large."""

    def __init__(self, description: str) -> None:
        self.description = description
        self._progress: Progress | None = None
        self._task = None

    def __call__(self, done: int, total: int | None) -> None:
        if self._progress is None:
            if total is None or total < PROGRESS_THRESHOLD:
                return
            self._progress = Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                DownloadColumn(),
                TransferSpeedColumn(),
                console=console,
                transient=True,
            )
            self._progress.start()
            self._task = self._progress.add_task(self.description, total=total)
        self._progress.update(self._task, completed=done)

    def stop(self) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--server", "server_url", default=None, help="Signaling server URL")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, server_url: Optional[str]) -> None:
    """Pinq - pair two devices with a short code and move one file or text between them."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = settings.model_copy(update={"signaling_url": server_url}) if server_url else settings


@cli.command()
@click.option("--host", default=None, help="Interface to bind")
@click.option("--port", default=None, type=int, help="Port to listen on")
def serve(host: Optional[str], port: Optional[int]) -> None:
    """Run the pairing broker."""
    import uvicorn

    uvicorn.run(
        "pinq.main:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@cli.command()
def code() -> None:
    """Print a fresh pairing code."""
    click.echo(generate_code())


@cli.command()
@click.argument("text", required=False)
@click.option("--file", "-f", "file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="File to send")
@click.option("--code", "-c", "pairing_code", default=None, help="Use this code instead of generating one")
@click.pass_context
def send(ctx: click.Context, text: Optional[str], file_path: Optional[Path], pairing_code: Optional[str]) -> None:
    """Send TEXT (or a file) to the device that enters the printed code."""
    config = ctx.obj["config"]
    if (text is None) == (file_path is None):
        raise click.UsageError("Pass either TEXT or --file, not both")

    room_code = normalize_code(pairing_code) if pairing_code else generate_code()
    if not is_valid_code(room_code):
        raise click.BadParameter(f"{room_code!r} is not a valid pairing code", param_hint="--code")

    async def run() -> TransferResult:
        reporter = ProgressReporter("Sending")
        async with SignalingClient(config.ws_url, http_url=config.signaling_url) as signaling:
            if file_path is not None:
                session = SenderSession.for_file(
                    room_code, file_path, signaling, tcp_channel_factory, config=config, on_progress=reporter
                )
            else:
                session = SenderSession.for_text(
                    room_code, text, signaling, tcp_channel_factory, config=config, on_progress=reporter
                )
            console.print(f"Pairing code: [bold cyan]{room_code}[/bold cyan]")
            console.print("[dim]Waiting for the receiver...[/dim]")
            await signaling.prewarm()
            try:
                return await session.run()
            finally:
                reporter.stop()

    try:
        result = asyncio.run(run())
    except PinqError as exc:
        console.print(f"[red]Send failed:[/red] {escape(str(exc))}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        sys.exit(130)
    console.print(f"[green]Delivered[/green] {_human_size(result.bytes_transferred)}")


@cli.command()
@click.argument("pairing_code", metavar="CODE")
@click.option("--path", "-p", "download_dir", type=click.Path(file_okay=False, path_type=Path), default=None, help="Directory to save files into")
@click.option("--confirm", is_flag=True, help="Ask before accepting the transfer")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def receive(
    ctx: click.Context, pairing_code: str, download_dir: Optional[Path], confirm: bool, verbose: bool
) -> None:
    """Receive whatever the sender with CODE is offering."""
    if verbose:
        setup_logging(True)
    config = ctx.obj["config"]
    room_code = normalize_code(pairing_code)
    if not is_valid_code(room_code):
        raise click.BadParameter(f"{room_code!r} is not a valid pairing code", param_hint="CODE")

    async def ask(metadata: MetadataFrame) -> bool:
        if metadata.type is TransferKind.FILE:
            prompt = f"Accept {metadata.filename} ({_human_size(metadata.size)})?"
        else:
            prompt = "Accept incoming text?"
        return await asyncio.to_thread(click.confirm, prompt, default=True, err=True)

    async def run() -> TransferResult:
        reporter = ProgressReporter("Receiving")
        async with SignalingClient(config.ws_url, http_url=config.signaling_url) as signaling:
            await signaling.prewarm()
            session = ReceiverSession(
                room_code,
                signaling,
                tcp_channel_factory,
                config=config,
                download_dir=download_dir,
                confirm=ask if confirm else None,
                on_progress=reporter,
            )
            try:
                return await session.run()
            finally:
                reporter.stop()

    try:
        result = asyncio.run(run())
    except PinqError as exc:
        console.print(f"[red]Receive failed:[/red] {escape(str(exc))}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        sys.exit(130)

    if not result.accepted:
        console.print("[yellow]Transfer declined[/yellow]")
    elif result.text is not None:
        click.echo(result.text)
    else:
        console.print(f"[green]Saved[/green] {result.path} ({_human_size(result.bytes_transferred)})")


if __name__ == "__main__":
    cli()
