"""CLI interface for rundiag.

Provides commands for analyzing captured heap snapshots and heap usage
timelines, comparing screenshots, summarizing error logs, and producing a
combined diagnostic report from a capture manifest.

Uses Click for command parsing and Rich for terminal output.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box

from rundiag import __version__
from rundiag.analysis.report_generator import ReportGenerator, format_bytes, severity_text
from rundiag.config import AnalysisConfig
from rundiag.errors import DiagnosticsError
from rundiag.events.error_aggregator import ErrorAggregator, ErrorEvent
from rundiag.heap.leak_detector import LeakDetector, MemorySample, MemoryTimeline
from rundiag.heap.snapshot_ingester import SnapshotIngester
from rundiag.sdk.capture_session import CaptureSession
from rundiag.visual.image_diff import ImageDiffEngine, PixelImage

logger = logging.getLogger(__name__)

console = Console()


# ============================================================================
# Helpers
# ============================================================================


def _error(message: str) -> None:
    """Print an error message and exit with code 1."""
    console.print(f"[bold red]Error:[/bold red] {message}")
    raise SystemExit(1)


def _warn(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}", style="yellow")


def _info(message: str) -> None:
    """Print an informational message."""
    console.print(f"[dim]{message}[/dim]")


def _load_json(path: str) -> Any:
    """Load a JSON document from disk.

    Raises
    ------
    SystemExit
        If the file cannot be read or parsed.
    """
    filepath = Path(path)
    if not filepath.is_file():
        _error(f"Not a file: {path}")

    try:
        return json.loads(filepath.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        _error(f"Invalid JSON in {path}: {exc}")
    except OSError as exc:
        _error(f"Cannot read {path}: {exc}")

    # Unreachable, but satisfies type checker.
    return None  # pragma: no cover


def _load_events(path: Path) -> List[ErrorEvent]:
    """Read one JSON error event per line; blank lines are ignored."""
    events: List[ErrorEvent] = []
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        _error(f"Cannot read {path}: {exc}")
        return events  # pragma: no cover

    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            events.append(ErrorEvent.from_dict(json.loads(line)))
        except (json.JSONDecodeError, TypeError, ValueError, AttributeError) as exc:
            _warn(f"{path}:{lineno}: skipping unreadable event ({exc})")
    return events


def _load_samples(data: Any) -> List[MemorySample]:
    if isinstance(data, dict):
        data = data.get("samples", [])
    if not isinstance(data, list):
        _error("Timeline must be a list of samples or an object with a 'samples' list")
    return [MemorySample.from_dict(item) for item in data]


def _load_image(path: str, width: int, height: int) -> PixelImage:
    """Read a raw RGBA raster of the given size."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        _error(f"Cannot read {path}: {exc}")
        raise  # pragma: no cover
    try:
        return PixelImage(width=width, height=height, rgba=data)
    except ValueError as exc:
        _error(f"{path}: {exc}")
        raise  # pragma: no cover


def _write_image(image: PixelImage, path: str) -> None:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(image.rgba)


def _session_from_manifest(manifest_path: str, config: AnalysisConfig) -> CaptureSession:
    """Build a capture session from a manifest file.

    Manifest layout (paths are relative to the manifest)::

        {
          "snapshots": [{"path": "t0.heapsnapshot", "timestamp": 0}],
          "samples": [{"timestamp": 0, "used_size": 1048576}],
          "screenshots": {"baseline": "a.rgba", "candidate": "b.rgba",
                          "width": 800, "height": 600},
          "errors": "console.jsonl"
        }
    """
    manifest = _load_json(manifest_path)
    if not isinstance(manifest, dict):
        _error(f"Manifest must be a JSON object: {manifest_path}")
    base = Path(manifest_path).parent
    session = CaptureSession(config=config, session_id=Path(manifest_path).stem)

    for entry in manifest.get("snapshots", []):
        snapshot_path = base / entry["path"]
        try:
            session.add_heap_snapshot(snapshot_path.read_bytes(), float(entry.get("timestamp", 0.0)))
        except OSError as exc:
            _error(f"Cannot read snapshot {snapshot_path}: {exc}")

    for sample in _load_samples(manifest.get("samples", [])):
        session.add_sample(sample.timestamp, sample.used_size, sample.node_count)

    shots = manifest.get("screenshots")
    if shots:
        width, height = int(shots["width"]), int(shots["height"])
        session.set_screenshots(
            _load_image(str(base / shots["baseline"]), width, height),
            _load_image(str(base / shots["candidate"]), width, height),
        )

    errors = manifest.get("errors")
    if isinstance(errors, str):
        for event in _load_events(base / errors):
            session.ingest_error(event)
    elif isinstance(errors, list):
        for item in errors:
            session.ingest_error(ErrorEvent.from_dict(item))

    return session


# ============================================================================
# CLI group
# ============================================================================


@click.group(name="rundiag")
@click.version_option(version=__version__, prog_name="rundiag")
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable verbose debug logging.",
)
@click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON file with analysis thresholds and limits.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Optional[str]) -> None:
    """rundiag - Runtime diagnostics for captured browser sessions."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    config = AnalysisConfig()
    if config_path is not None:
        try:
            config = AnalysisConfig.load(Path(config_path))
        except (ValueError, TypeError, KeyError) as exc:
            _error(f"Invalid config file {config_path}: {exc}")
    ctx.obj = config


# ============================================================================
# heap
# ============================================================================


@cli.command()
@click.argument("snapshot_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--baseline", "-b",
    "baseline_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Earlier snapshot to diff constructor counts against.",
)
@click.option("--top", "top_n", type=int, default=None, help="Maximum detached clusters to list.")
@click.pass_obj
def heap(
    config: AnalysisConfig,
    snapshot_path: str,
    baseline_path: Optional[str],
    top_n: Optional[int],
) -> None:
    """Find detached DOM and oversized closures in a heap snapshot.

    Usage: rundiag heap page.heapsnapshot --baseline before.heapsnapshot
    """
    limits = config.heap
    if top_n is not None:
        limits = dataclasses.replace(limits, detached_top_n=top_n)
    ingester = SnapshotIngester(limits=limits)
    detector = LeakDetector(thresholds=config.growth, limits=limits)
    try:
        graph = ingester.parse(Path(snapshot_path).read_bytes())
        baseline = (
            ingester.parse(Path(baseline_path).read_bytes()) if baseline_path else None
        )
        result = detector.analyze(graph=graph, baseline_graph=baseline)
    except DiagnosticsError as exc:
        _error(str(exc))
        return  # pragma: no cover

    _info(f"{graph.node_count} nodes, {graph.edge_count} edges, {format_bytes(graph.total_self_size)}")
    for failure in result.failures:
        _warn(failure)

    if result.detached:
        table = Table(title="Detached DOM", box=box.ROUNDED, title_style="bold white")
        table.add_column("Root", style="bold", max_width=40)
        table.add_column("Nodes", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("Confidence")
        table.add_column("Retained via", max_width=50)
        for cluster in result.detached:
            table.add_row(
                f"{cluster.root_name} @{cluster.root_id}",
                str(cluster.node_count),
                format_bytes(cluster.total_size),
                cluster.size_confidence.value,
                cluster.retaining_path or "-",
            )
        console.print(table)
    else:
        console.print("[green]No detached DOM found.[/green]")

    if result.closures:
        table = Table(title="Oversized Closures", box=box.ROUNDED, title_style="bold white")
        table.add_column("Closure", style="bold", max_width=40)
        table.add_column("Self", justify="right")
        table.add_column("Retained", justify="right")
        table.add_column("Confidence")
        for closure in result.closures:
            table.add_row(
                f"{closure.name or '(anonymous)'} @{closure.node_id}",
                format_bytes(closure.self_size),
                format_bytes(closure.retained_size),
                closure.size_confidence.value,
            )
        console.print(table)

    for partial in result.partial:
        _warn(f"{partial.node_name} @{partial.node_id}: {partial.reason}")

    if result.constructor_deltas:
        table = Table(title="Constructor Growth", box=box.ROUNDED, title_style="bold white")
        table.add_column("Constructor", style="bold", max_width=50)
        table.add_column("Count", justify="right")
        table.add_column("Size", justify="right")
        for delta in result.constructor_deltas[:20]:
            table.add_row(
                delta.constructor,
                f"{delta.count_delta:+d}",
                f"{'+' if delta.size_delta >= 0 else '-'}{format_bytes(abs(delta.size_delta))}",
            )
        console.print(table)


# ============================================================================
# growth
# ============================================================================


@cli.command()
@click.argument("timeline_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--threshold", "-t",
    type=float,
    default=None,
    help="Percent growth above which a leak is reported.",
)
@click.pass_obj
def growth(config: AnalysisConfig, timeline_path: str, threshold: Optional[float]) -> None:
    """Check a heap usage timeline for sustained growth.

    Usage: rundiag growth timeline.json --threshold 10
    """
    thresholds = config.growth
    if threshold is not None:
        thresholds = dataclasses.replace(thresholds, percent_threshold=threshold)

    try:
        timeline = MemoryTimeline(_load_samples(_load_json(timeline_path)))
    except ValueError as exc:
        _error(str(exc))
        return  # pragma: no cover

    result = LeakDetector(thresholds=thresholds, limits=config.heap).detect_growth(timeline)

    color = "red" if result.is_leak else "green"
    verdict = "LEAK SUSPECTED" if result.is_leak else "no sustained growth"
    body = (
        f"Growth: {result.percent_growth:.1f}% ({format_bytes(result.absolute_growth)})\n"
        f"Rate: {format_bytes(result.rate_bytes_per_second)}/s\n"
        f"Increasing steps: {result.consistency_ratio * 100:.0f}%\n"
        f"Samples: {result.samples_analyzed}"
    )
    console.print(
        Panel(body, title=f"[bold {color}]{verdict}[/bold {color}]", border_style=color, padding=(0, 1))
    )
    for rec in result.recommendations:
        console.print(f"  - {rec}")


# ============================================================================
# diff
# ============================================================================


@cli.command()
@click.argument("baseline_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("candidate_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--width", "-W", type=int, required=True, help="Image width in pixels.")
@click.option("--height", "-H", type=int, required=True, help="Image height in pixels.")
@click.option(
    "--threshold", "-t",
    type=float,
    default=None,
    help="Per-pixel color distance threshold (0-1).",
)
@click.option(
    "--overlay", "-o",
    "overlay_path",
    type=click.Path(),
    default=None,
    help="Write a raw RGBA overlay highlighting differences.",
)
@click.pass_obj
def diff(
    config: AnalysisConfig,
    baseline_path: str,
    candidate_path: str,
    width: int,
    height: int,
    threshold: Optional[float],
    overlay_path: Optional[str],
) -> None:
    """Compare two raw RGBA screenshots.

    Usage: rundiag diff before.rgba after.rgba --width 800 --height 600
    """
    options = config.diff
    if threshold is not None:
        try:
            options = dataclasses.replace(options, threshold=threshold)
        except ValueError as exc:
            _error(str(exc))

    baseline = _load_image(baseline_path, width, height)
    candidate = _load_image(candidate_path, width, height)
    try:
        result = ImageDiffEngine(options).compare(baseline, candidate)
    except DiagnosticsError as exc:
        _error(str(exc))
        return  # pragma: no cover

    console.print(
        f"[bold]Match:[/bold] {result.match_percentage:.2f}% "
        f"({result.diff_pixel_count} of {result.total_pixel_count} pixels differ)"
    )
    if result.hotspots:
        table = Table(title="Hotspots", box=box.ROUNDED, title_style="bold white")
        table.add_column("Region (x, y, w, h)")
        table.add_column("Pixels", justify="right")
        table.add_column("Severity", justify="center")
        for hotspot in result.hotspots:
            bbox = hotspot.bounding_box
            table.add_row(
                f"{bbox.x}, {bbox.y}, {bbox.width}, {bbox.height}",
                str(hotspot.pixel_count),
                severity_text(hotspot.severity_tier),
            )
        console.print(table)

    if overlay_path:
        _write_image(result.overlay(baseline), overlay_path)
        console.print(f"[bold green]Overlay saved to:[/bold green] {overlay_path}")


# ============================================================================
# errors
# ============================================================================


@cli.command()
@click.argument("events_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--min-occurrences", "-m",
    type=int,
    default=2,
    show_default=True,
    help="Minimum occurrences for a recurring pattern.",
)
@click.option(
    "--window", "-w",
    "window_ms",
    type=float,
    default=None,
    help="Trend bucket size in milliseconds.",
)
@click.pass_obj
def errors(
    config: AnalysisConfig,
    events_path: str,
    min_occurrences: int,
    window_ms: Optional[float],
) -> None:
    """Group a JSON-lines error log into patterns and trends.

    Usage: rundiag errors console.jsonl --min-occurrences 3
    """
    aggregator = ErrorAggregator(config.aggregator)
    for event in _load_events(Path(events_path)):
        aggregator.ingest(event)

    stats = aggregator.stats()
    _info(
        f"{stats.ingested} events, {stats.distinct_fingerprints} fingerprints"
        + (f", {stats.evicted} evicted" if stats.evicted else "")
    )

    patterns = aggregator.group_patterns(min_occurrences=min_occurrences)
    if patterns:
        table = Table(title="Recurring Errors", box=box.ROUNDED, show_lines=True, title_style="bold white")
        table.add_column("Count", justify="right")
        table.add_column("Fingerprint", max_width=60)
        table.add_column("Cause")
        table.add_column("Suggested fix", max_width=50)
        for pattern in patterns:
            table.add_row(
                str(pattern.frequency), pattern.fingerprint,
                pattern.common_cause, pattern.suggested_fix,
            )
        console.print(table)
    else:
        console.print("[green]No recurring errors.[/green]")

    try:
        trends = aggregator.compute_trends(window_size_ms=window_ms)
    except ValueError as exc:
        _error(str(exc))
        return  # pragma: no cover
    if trends:
        table = Table(title="Trends", box=box.ROUNDED, title_style="bold white")
        table.add_column("Fingerprint", max_width=60)
        table.add_column("Buckets")
        table.add_column("Direction")
        table.add_column("Change", justify="right")
        for trend in trends:
            table.add_row(
                trend.fingerprint,
                " ".join(str(c) for c in trend.bucket_counts),
                trend.direction,
                f"{trend.percent_change:+.1f}%",
            )
        console.print(table)


# ============================================================================
# analyze
# ============================================================================


@cli.command()
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--format", "-f",
    "report_format",
    type=click.Choice(["terminal", "json"], case_sensitive=False),
    default="terminal",
    show_default=True,
    help="Report output format.",
)
@click.option(
    "--output", "-o",
    type=click.Path(),
    default=None,
    help="Output file path for the json format.",
)
@click.option("--parallel/--serial", default=True, show_default=True, help="Run analyses concurrently.")
@click.pass_obj
def analyze(
    config: AnalysisConfig,
    manifest_path: str,
    report_format: str,
    output: Optional[str],
    parallel: bool,
) -> None:
    """Run every analysis over a capture manifest and report the result.

    Usage: rundiag analyze capture.json --format json --output report.json
    """
    session = _session_from_manifest(manifest_path, config)
    report = session.analyze(parallel=parallel)

    for name in report.failed_sections:
        section = report.section(name)
        if section.reason != "no input captured":
            _warn(f"{name}: {section.reason}")

    generator = ReportGenerator(
        report,
        patterns=session.aggregator.group_patterns(),
        console=console,
        weights=config.weights,
    )
    result_path = generator.generate_report(format=report_format, output_path=output)
    if result_path:
        console.print(f"[bold green]Report saved to:[/bold green] {result_path}")


# ============================================================================
# init-config
# ============================================================================


@cli.command(name="init-config")
@click.argument("output_path", type=click.Path(dir_okay=False))
@click.pass_obj
def init_config(config: AnalysisConfig, output_path: str) -> None:
    """Write the active configuration to a JSON file for editing."""
    config.save(Path(output_path))
    console.print(f"[bold green]Config saved to:[/bold green] {output_path}")


# ============================================================================
# Entry point
# ============================================================================


def main() -> None:
    """Entry point for the CLI.

    This function exists so the CLI can also be invoked via
    ``python -m rundiag.cli.main``.
    """
    cli()


if __name__ == "__main__":
    main()
