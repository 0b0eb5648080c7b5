"""CLI for running the relay server and talking to it.

This script starts the WebSocket relay and provides simple clients for
streaming a raw PCM file or a test tone to /play and recording from /rec.
"""

import asyncio
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from audiorelay.audio.format import AudioFormat, AudioFormatError, validate_audio_format
from audiorelay.client.relay_client import play_pcm, play_url, record_pcm, record_url
from audiorelay.client.tones import chunked, sine_wave
from audiorelay.config import ConfigManager, RelayConfig
from audiorelay.daemons.audio_relay_daemon import main_async
from audiorelay.relay.protocol import CloseCode
from audiorelay.system.path_resolver import PathResolver
from audiorelay.utils.structlog_configurator import configure_structlog


def _format_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that describes a PCM format."""
    func = click.option(
        "--bit-depth",
        "-b",
        type=click.Choice(["16", "24", "32"]),
        help="Bits per sample (default: 16)",
    )(func)
    func = click.option(
        "--sample-rate", "-s", type=int, help="Sample rate in Hz (default: 16000)"
    )(func)
    func = click.option("--channels", "-c", type=int, help="Number of channels (default: 1)")(
        func
    )
    return func


def _client_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Connection and format options for the client commands."""
    func = click.option("--device", help="ALSA device on the server (default: default)")(func)
    func = _format_options(func)
    func = click.option(
        "--port", "-p", default=3000, show_default=True, type=int, help="Server port"
    )(func)
    func = click.option("--host", default="localhost", show_default=True, help="Server host")(
        func
    )
    return func


def _build_format(
    channels: int | None,
    sample_rate: int | None,
    bit_depth: str | None,
    device: str | None = None,
    defaults: AudioFormat | None = None,
) -> AudioFormat:
    fields: dict[str, Any] = {}
    if channels is not None:
        fields["channels"] = channels
    if sample_rate is not None:
        fields["sampleRate"] = sample_rate
    if bit_depth is not None:
        fields["bitDepth"] = int(bit_depth)
    if device is not None:
        fields["device"] = device
    try:
        return validate_audio_format(fields, defaults)
    except AudioFormatError as e:
        raise click.UsageError(f"Invalid audio format: {e}") from e


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Streaming audio relay between WebSocket clients and ALSA devices.

    Examples:
      # Run the server with the config file settings
      audio-relay serve

      # Run on another port with stereo 48 kHz defaults
      audio-relay serve --port 8080 -c 2 -s 48000

      # Play a raw S16_LE mono 16 kHz file
      audio-relay play speech.raw

      # Record 5 seconds from the default capture device
      audio-relay record capture.raw --duration 5

      # Play a one second 440 Hz tone
      audio-relay tone --frequency 440 --seconds 1
    """
    ctx.ensure_object(dict)


@cli.command()
@_format_options
@click.option("--port", "-p", type=int, help="Port to listen on (default: 3000)")
@click.option("--host", help="Address to bind (default: 0.0.0.0)")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (default: $AUDIORELAY_CONFIG)",
)
def serve(
    channels: int | None,
    sample_rate: int | None,
    bit_depth: str | None,
    port: int | None,
    host: str | None,
    debug: bool,
    config_path: Path | None,
) -> None:
    """Run the relay server until SIGINT or SIGTERM."""
    config_manager = ConfigManager(PathResolver())
    if config_path is not None:
        config_manager.config_path = config_path

    try:
        config = config_manager.load()
    except ValueError as e:
        click.echo(click.style(f"✗ {e}", fg="red"), err=True)
        sys.exit(1)

    overrides: dict[str, Any] = {
        "default_format": _build_format(
            channels, sample_rate, bit_depth, defaults=config.default_format
        )
    }
    if port is not None:
        overrides["port"] = port
    if host is not None:
        overrides["host"] = host
    if debug:
        overrides["debug"] = True
    config = RelayConfig.model_validate({**config.model_dump(), **overrides})

    configure_structlog(config)
    click.echo(
        f"Relaying audio on ws://{config.host}:{config.port} "
        f"(default format {config.default_format.format_token}, "
        f"{config.default_format.channels} ch @ {config.default_format.sample_rate} Hz)"
    )
    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        pass


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_client_options
@click.option(
    "--chunk-size", default=4096, show_default=True, type=int, help="Bytes per WebSocket frame"
)
def play(
    file: Path,
    host: str,
    port: int,
    channels: int | None,
    sample_rate: int | None,
    bit_depth: str | None,
    device: str | None,
    chunk_size: int,
) -> None:
    """Stream a raw PCM FILE to the server's /play endpoint."""
    audio_format = _build_format(channels, sample_rate, bit_depth, device)
    chunks = chunked(file.read_bytes(), chunk_size)
    click.echo(f"Playing {file} ({audio_format.format_token}) on {host}:{port}...")
    result = asyncio.run(play_pcm(play_url(host, port), chunks, audio_format))
    _report_playback(result.bytes_sent, result.close_code, result.close_reason)


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False, path_type=Path))
@_client_options
@click.option(
    "--duration", default=5.0, show_default=True, type=float, help="Seconds to record"
)
def record(
    file: Path,
    host: str,
    port: int,
    channels: int | None,
    sample_rate: int | None,
    bit_depth: str | None,
    device: str | None,
    duration: float,
) -> None:
    """Record raw PCM from the server's /rec endpoint into FILE."""
    audio_format = _build_format(channels, sample_rate, bit_depth, device)
    click.echo(f"Recording {duration:g}s of {audio_format.format_token} from {host}:{port}...")
    with file.open("wb") as sink:
        result = asyncio.run(
            record_pcm(record_url(host, port), audio_format, sink.write, duration)
        )

    if result.close_code not in (None, CloseCode.NORMAL):
        click.echo(
            click.style(
                f"✗ Recording ended by server ({result.close_code}: {result.close_reason})",
                fg="red",
            )
        )
        sys.exit(1)
    click.echo(
        click.style(
            f"✓ Recorded {result.bytes_received} bytes "
            f"({audio_format.duration_ms(result.bytes_received) / 1000:.2f}s) to {file}",
            fg="green",
        )
    )


@cli.command()
@_client_options
@click.option("--frequency", "-f", default=440.0, show_default=True, type=float, help="Hz")
@click.option("--seconds", default=1.0, show_default=True, type=float, help="Tone length")
@click.option(
    "--amplitude", default=0.5, show_default=True, type=float, help="Fraction of full scale"
)
def tone(
    host: str,
    port: int,
    channels: int | None,
    sample_rate: int | None,
    bit_depth: str | None,
    device: str | None,
    frequency: float,
    seconds: float,
    amplitude: float,
) -> None:
    """Play a generated sine tone through the server's /play endpoint.

    24-bit tones are sent in the four-byte containers aplay expects for
    S24_LE. The server times playback at three bytes per sample, so it
    closes the connection about a third later than the tone ends.
    """
    audio_format = _build_format(channels, sample_rate, bit_depth, device)
    try:
        pcm = sine_wave(frequency, seconds, audio_format, amplitude)
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    click.echo(f"Playing {frequency:g} Hz for {seconds:g}s on {host}:{port}...")
    result = asyncio.run(play_pcm(play_url(host, port), chunked(pcm, 4096), audio_format))
    _report_playback(result.bytes_sent, result.close_code, result.close_reason)


def _report_playback(bytes_sent: int, close_code: int | None, close_reason: str) -> None:
    if close_code == CloseCode.NORMAL:
        click.echo(click.style(f"✓ Played {bytes_sent} bytes ({close_reason})", fg="green"))
        return
    click.echo(
        click.style(f"✗ Playback ended with {close_code}: {close_reason or 'no reason'}", fg="red")
    )
    sys.exit(1)


def main() -> None:
    """Entry point for the audio-relay command."""
    cli(obj={})


if __name__ == "__main__":
    main()
