"""Command-line interface for concat_map.

Provides 'analyze' and 'run' subcommands for inspecting a sample's feature
map and playing grains from it.
"""
from __future__ import annotations

import logging
from pathlib import Path

import typer

from .build import DEFAULT_BLOCK_SIZE, DEFAULT_HOP_SIZE
from .engine import DEFAULT_DURATION, DEFAULT_JITTER, DEFAULT_PERIOD, MAX_JITTER
from .errors import ConcatMapError, EmptyIndexError


app = typer.Typer(
    name="concat-map",
    help="concat-map - Concatenative grain synthesis steered through a 2-D feature map",
    add_completion=False,
    rich_markup_mode="rich"
)


@app.callback()
def main_options(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    )
):
    """Configure logging for every subcommand."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _check_file(file: Path) -> None:
    if not file.exists():
        typer.echo(f"Error: {file} does not exist", err=True)
        raise typer.Exit(1)
    if not file.is_file():
        typer.echo(f"Error: {file} is not a file", err=True)
        raise typer.Exit(1)


BLOCK_SIZE_OPTION = typer.Option(
    DEFAULT_BLOCK_SIZE, "--block-size", "-b", help="Analysis block length in samples", min=2
)
HOP_SIZE_OPTION = typer.Option(
    DEFAULT_HOP_SIZE, "--hop-size", "-H", help="Samples between consecutive block starts", min=1
)
SAMPLE_RATE_OPTION = typer.Option(
    None, "--sample-rate", "-r", help="Resample the file to this rate before analysis", min=1000
)
SILENCE_OPTION = typer.Option(
    None, "--silence-db", help="Drop blocks quieter than this level (dBFS), e.g. -40", max=0.0
)


@app.command()
def analyze(
    file: Path = typer.Argument(
        ...,
        help="Audio file to analyze (WAV, AIFF, FLAC, etc.)",
        metavar="FILE"
    ),
    block_size: int = BLOCK_SIZE_OPTION,
    hop_size: int = HOP_SIZE_OPTION,
    sample_rate: int = SAMPLE_RATE_OPTION,
    silence_db: float = SILENCE_OPTION,
):
    """
    Analyze an audio file and summarize its feature map.

    The file is converted to mono, cut into overlapping blocks and every block
    is measured for RMS energy and zero-crossing rate. The normalized measures
    are the coordinates of the map played by 'run'.

    Examples:
        concat-map analyze loop.wav
        concat-map analyze loop.wav --block-size 1024 --hop-size 256
    """
    _check_file(file)

    from . import build as build_module
    try:
        buffer, analysis = build_module.analyze_file(
            str(file),
            block_size=block_size,
            hop_size=hop_size,
            target_sr=sample_rate,
            silence_db=silence_db,
            progress=True,
        )
    except (ConcatMapError, ValueError) as e:
        typer.echo(f"Error during analysis: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"File: {file}")
    typer.echo(f"Duration: {buffer.duration:.2f} s at {buffer.sample_rate} Hz")
    typer.echo(f"Blocks: {len(analysis)} (block {block_size}, hop {hop_size})")
    if len(analysis) == 0:
        typer.echo("Warning: file is shorter than one block; nothing to play", err=True)
        return
    typer.echo(f"RMS range: [{analysis.rms.min():.4f}, {analysis.rms.max():.4f}]")
    typer.echo(f"Zero crossings/s range: [{analysis.zcr.min():.1f}, {analysis.zcr.max():.1f}]")


@app.command()
def run(
    file: Path = typer.Argument(
        ...,
        help="Audio file to play grains from",
        metavar="FILE"
    ),
    x: float = typer.Option(
        None, "--x", help="Control point X (normalized zero-crossing rate)", min=0.0, max=1.0
    ),
    y: float = typer.Option(
        None, "--y", help="Control point Y (normalized RMS)", min=0.0, max=1.0
    ),
    period: float = typer.Option(
        DEFAULT_PERIOD, "--period", "-p", help="Seconds between grains", min=0.01, max=0.2
    ),
    duration: float = typer.Option(
        DEFAULT_DURATION, "--duration", "-d", help="Grain length in seconds", min=0.0, max=1.0
    ),
    jitter: float = typer.Option(
        DEFAULT_JITTER, "--jitter", "-j", help="Maximum random grain delay in seconds", min=0.0, max=MAX_JITTER
    ),
    gain: float = typer.Option(
        1.0, "--gain", "-g", help="Master output gain", min=0.0, max=2.0
    ),
    seconds: float = typer.Option(
        None, "--seconds", "-s", help="Stop after this many seconds (default: until Ctrl-C)", min=0.1
    ),
    device: int = typer.Option(
        None,
        "--device",
        help="Output device ID (use sounddevice.query_devices() to list)",
        metavar="ID"
    ),
    block_size: int = BLOCK_SIZE_OPTION,
    hop_size: int = HOP_SIZE_OPTION,
    sample_rate: int = SAMPLE_RATE_OPTION,
    silence_db: float = SILENCE_OPTION,
):
    """
    Play grains from FILE, choosing blocks nearest to a control point.

    Give both --x and --y to fire grains; without them the engine starts and
    idles silently.

    Examples:
        concat-map run loop.wav --x 0.2 --y 0.8
        concat-map run loop.wav --x 0.5 --y 0.5 --period 0.02 --duration 0.1 --seconds 10
    """
    _check_file(file)
    if (x is None) != (y is None):
        typer.echo("Error: --x and --y must be given together", err=True)
        raise typer.Exit(1)

    # Validate audio device if specified
    if device is not None:
        try:
            import sounddevice as sd
            devices = sd.query_devices()
        except Exception as e:
            typer.echo(f"Error querying audio devices: {e}", err=True)
            raise typer.Exit(1)

        if device < 0 or device >= len(devices):
            typer.echo(f"Error: Device ID {device} not found", err=True)
            typer.echo("Available devices:")
            for i, dev in enumerate(devices):
                typer.echo(f"  {i}: {dev['name']}")
            raise typer.Exit(1)

        # Verify device has output capabilities
        device_info = devices[device]
        if device_info['max_output_channels'] == 0:
            typer.echo(f"Error: Device {device} ({device_info['name']}) has no output channels", err=True)
            raise typer.Exit(1)

    from . import runtime as runtime_module
    try:
        engine = runtime_module.run_engine(
            str(file),
            x=x,
            y=y,
            period=period,
            duration=duration,
            jitter=jitter,
            gain=gain,
            seconds=seconds,
            device=device,
            block_size=block_size,
            hop_size=hop_size,
            sample_rate=sample_rate,
            silence_db=silence_db,
        )
    except EmptyIndexError as e:
        typer.echo(f"Error: {e} (is the file shorter than --block-size?)", err=True)
        raise typer.Exit(1)
    except Exception as e:
        typer.echo(f"Error running engine: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Played {engine.grains_emitted} grains")


def main() -> None:
    """Main entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()
