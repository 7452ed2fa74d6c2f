#!/usr/bin/env python3
"""
Route Historian CLI

Runs one exploration session from the command line.

Usage:
    python -m route_historian.main --lat <lat> --lon <lon> [options]
    route-historian --trace <trace.json> [options]

Examples:
    # Explore once on foot
    route-historian --lat -23.5505 --lon -46.6333

    # Drive along a recorded trace at 4x speed, speaking highlights
    route-historian --trace samples/drive.json --speed 4 --drive --speak

    # No API key needed
    route-historian --lat -23.5505 --lon -46.6333 --mock --itinerary
"""

import argparse
import asyncio
import logging
import sys
import traceback
from dataclasses import dataclass

from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .audio import AudioOutput, NullAudioOutput, SoundDeviceOutput
from .config import AppConfig, get_config
from .gemini_client import (
    GeminiClient,
    GeminiContextProvider,
    GeminiItinerarySummarizer,
    GeminiNarrationProvider,
)
from .location import (
    LocationOptions,
    LocationSource,
    StaticLocationSource,
    TermuxLocationSource,
    TraceLocationSource,
)
from .models import ErrorKind, OrchestratorSnapshot, Outcome, OutcomeStatus, Phase
from .orchestrator import ExplorationOrchestrator
from .providers import MockContextProvider, MockItinerarySummarizer, MockNarrationProvider
from .session import ExplorationSession
from .utils.helpers import format_coordinates, format_duration, load_config, setup_logging
from .wake_lock import TermuxWakeLock, WakeLock


logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_CONFIGURATION_MISSING = 1
EXIT_LOOKUP_FAILED = 2
EXIT_UNEXPECTED = 3

SETTLE_TIMEOUT = 120.0


@dataclass
class SessionReport:
    """What the CLI prints after a session."""
    snapshot: OrchestratorSnapshot
    explore: Outcome | None = None
    itinerary: Outcome | None = None
    narration_seconds: float | None = None


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="route-historian",
        description="Discover and narrate the history of the places around you",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --lat -23.5505 --lon -46.6333
  %(prog)s --lat -23.5505 --lon -46.6333 --drive --speak
  %(prog)s --trace drive.json --speed 4 --drive
  %(prog)s --lat -23.5505 --lon -46.6333 --mock --itinerary
        """
    )

    # Location source
    parser.add_argument("--lat", type=float, default=None, help="Latitude of a fixed position")
    parser.add_argument("--lon", type=float, default=None, help="Longitude of a fixed position")

    parser.add_argument(
        "--trace",
        type=str,
        default=None,
        help="Play back positions from a recorded trace JSON file"
    )

    parser.add_argument(
        "--speed",
        type=float,
        default=1.0,
        help="Trace playback speed multiplier (default: 1.0)"
    )

    parser.add_argument(
        "--termux",
        action="store_true",
        help="Read the device GPS through Termux:API and hold a wake lock while driving"
    )

    # Behaviour
    parser.add_argument(
        "--drive",
        action="store_true",
        help="Driving mode: automatic lookup, highlights are spoken"
    )

    parser.add_argument(
        "--speak",
        action="store_true",
        help="Play narration through the sound card (requires the 'audio' extra)"
    )

    parser.add_argument(
        "--itinerary",
        action="store_true",
        help="Print an e-mail style itinerary of the places found"
    )

    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use mock providers (for testing without an API key)"
    )

    parser.add_argument(
        "-c", "--config",
        type=str,
        default=None,
        help="Path to configuration YAML file"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging to console"
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress all console output except errors"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    return parser


def build_config(config_file: str | None) -> AppConfig:
    """Environment config with optional YAML overrides."""
    config = get_config()
    if config_file:
        config.apply_overrides(load_config(config_file))
    else:
        try:
            config.apply_overrides(load_config())
        except FileNotFoundError:
            logger.debug("No config.yaml found, using defaults")
    return config


def build_location_source(args: argparse.Namespace, config: AppConfig) -> LocationSource:
    """Pick the location reader from the command line."""
    options = LocationOptions.from_config(config.location)

    if args.trace:
        return TraceLocationSource(args.trace, speed=args.speed, options=options)
    if args.termux:
        return TermuxLocationSource(options=options)
    if args.lat is None or args.lon is None:
        raise ValueError("Provide --lat and --lon, --trace FILE or --termux")
    return StaticLocationSource(args.lat, args.lon, options=options)


def build_orchestrator(
    args: argparse.Namespace,
    config: AppConfig,
    client: GeminiClient | None,
) -> ExplorationOrchestrator:
    """Assemble providers, audio output and wake lock."""
    if client is None:
        context_provider = MockContextProvider()
        narration_provider = MockNarrationProvider(sample_rate=config.narration.sample_rate)
        itinerary = MockItinerarySummarizer()
    else:
        context_provider = GeminiContextProvider(client)
        narration_provider = GeminiNarrationProvider(client)
        itinerary = GeminiItinerarySummarizer(client)

    audio_output: AudioOutput = SoundDeviceOutput() if args.speak else NullAudioOutput()
    wake_lock = TermuxWakeLock() if args.termux else WakeLock()

    return ExplorationOrchestrator(
        context_provider,
        narration_provider=narration_provider,
        audio_output=audio_output,
        itinerary_summarizer=itinerary,
        wake_lock=wake_lock,
    )


async def wait_for_state(orchestrator: ExplorationOrchestrator, predicate, timeout: float) -> bool:
    """Wait until ``predicate(snapshot)`` holds; False on timeout."""
    if predicate(orchestrator.snapshot()):
        return True

    reached = asyncio.Event()

    def listener(snapshot: OrchestratorSnapshot) -> None:
        if predicate(snapshot):
            reached.set()

    unsubscribe = orchestrator.subscribe(listener)
    try:
        await asyncio.wait_for(reached.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False
    finally:
        unsubscribe()


def _settled(snapshot: OrchestratorSnapshot) -> bool:
    if snapshot.phase in (Phase.ERROR, Phase.CONFIGURATION_MISSING):
        return True
    return snapshot.phase == Phase.READY and snapshot.last_analyzed_position is not None


async def run_session(args: argparse.Namespace, config: AppConfig) -> SessionReport:
    """Run one session and collect what should be printed."""
    client = None if args.mock else GeminiClient(app_config=config)
    try:
        orchestrator = build_orchestrator(args, config, client)
        source = build_location_source(args, config)
        session = ExplorationSession(orchestrator, source, config, tracking=bool(args.trace))
        report = SessionReport(snapshot=orchestrator.snapshot())

        try:
            if args.drive:
                session.set_mode(True)
            session.start()

            if args.trace:
                # The trace ends the watch; standing mode explores at the final position
                await session.wait()
            elif args.drive:
                await wait_for_state(orchestrator, _settled, SETTLE_TIMEOUT)
                await session.drain()
            else:
                await session.wait()

            if not args.drive and orchestrator.snapshot().manual_explore_available:
                report.explore = await session.explore()

            asset = orchestrator.audio.current_asset
            if asset is not None:
                report.narration_seconds = asset.duration_seconds
                await wait_for_state(orchestrator, lambda s: not s.is_playing, asset.duration_seconds + 5)

            if args.itinerary and orchestrator.phase != Phase.CONFIGURATION_MISSING:
                report.itinerary = await orchestrator.generate_itinerary()

            report.snapshot = orchestrator.snapshot()
        finally:
            session.stop()

        return report
    finally:
        if client is not None:
            await client.aclose()


def exit_code_for(report: SessionReport) -> int:
    snapshot = report.snapshot
    if snapshot.phase == Phase.CONFIGURATION_MISSING:
        return EXIT_CONFIGURATION_MISSING
    if report.explore is not None and report.explore.status == OutcomeStatus.FAILED:
        return EXIT_LOOKUP_FAILED
    if snapshot.last_error is not None and snapshot.last_error.kind in (
        ErrorKind.LOOKUP_FAILED,
        ErrorKind.LOCATION_UNAVAILABLE,
    ):
        return EXIT_LOOKUP_FAILED
    if snapshot.last_analyzed_position is None:
        return EXIT_LOOKUP_FAILED
    return EXIT_OK


def print_report(console: Console, report: SessionReport) -> None:
    """Print the session result using rich formatting."""
    snapshot = report.snapshot

    if snapshot.last_error:
        console.print(Panel(
            snapshot.last_error.message,
            title=f"[bold red]{snapshot.last_error.kind.value}[/bold red]",
            border_style="red"
        ))

    if snapshot.highlight:
        console.print(Panel(
            snapshot.highlight,
            title="[bold yellow]Curious fact[/bold yellow]",
            border_style="yellow"
        ))

    if snapshot.narrative_text:
        console.print(Panel(
            snapshot.narrative_text,
            title="[bold green]History nearby[/bold green]",
            border_style="green"
        ))

    if snapshot.places:
        table = Table(title=f"Places found ({len(snapshot.places)})")
        table.add_column("Place", style="cyan")
        table.add_column("Where", style="white")
        table.add_column("Map", style="dim")
        for place in snapshot.places:
            table.add_row(
                place.title,
                format_coordinates(place.location.latitude, place.location.longitude),
                place.external_map_uri or "",
            )
        console.print(table)

    if report.itinerary and report.itinerary.message:
        console.print(Panel(
            report.itinerary.message,
            title="[bold blue]Itinerary[/bold blue]",
            border_style="blue"
        ))

    status = [f"mode {snapshot.mode.value}", f"phase {snapshot.phase.value}"]
    if snapshot.position:
        status.append(format_coordinates(snapshot.position.latitude, snapshot.position.longitude))
    if report.narration_seconds is not None:
        status.append(f"narration {format_duration(report.narration_seconds)}")
    console.print(f"\n[dim]{' | '.join(status)}[/dim]")


def main() -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args()

    if args.quiet:
        log_level = "ERROR"
    elif args.verbose:
        log_level = "DEBUG"
    else:
        log_level = "WARNING"

    setup_logging(level=log_level)
    console = Console()
    error_console = Console(stderr=True)

    try:
        config = build_config(args.config)
        if args.verbose:
            config.log_configuration()

        if args.quiet:
            report = asyncio.run(run_session(args, config))
        else:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Exploring...", total=None)
                report = asyncio.run(run_session(args, config))
                progress.update(task, completed=True)

        if not args.quiet:
            print_report(console, report)
        elif report.snapshot.last_error:
            error_console.print(f"[red]{report.snapshot.last_error.message}[/red]")

        return exit_code_for(report)

    except (FileNotFoundError, ValueError) as e:
        error_console.print(f"[red]Configuration Error:[/red] {e}")
        return EXIT_CONFIGURATION_MISSING

    except ImportError as e:
        error_console.print(f"[red]Audio output unavailable:[/red] {e} (pip install 'route-historian[audio]')")
        return EXIT_CONFIGURATION_MISSING

    except Exception as e:
        error_console.print(f"[red]Unexpected Error:[/red] {e}")
        if args.verbose:
            traceback.print_exc()
        return EXIT_UNEXPECTED


if __name__ == "__main__":
    sys.exit(main())
