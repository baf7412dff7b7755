"""CLI for asset-reducer."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from asset_reducer.batch import BatchOrchestrator, unique_levels
from asset_reducer.cache import FolderLayout, QualityCache
from asset_reducer.config import Settings, load_settings
from asset_reducer.errors import ReducerError
from asset_reducer.logging_config import init_logging
from asset_reducer.models import MINIMAL, ORIGINAL, STANDARD, QualityLevel, UnitResult
from asset_reducer.quality_spec import output_file_for, parse_preset_list, parse_quality_spec
from asset_reducer.reducer import AssetReducer
from asset_reducer.store import verify_file_saved

app = typer.Typer(
    name="assetreduce",
    help="Headless multi-quality reduction of 3D assets",
    add_completion=False,
)
console = Console()

QUALITY_OPTION = typer.Option(
    None, "--quality", "-q",
    help="preset:path or custom:path:ratio[:key=value...] (repeatable)",
)
PRESET_OPTION = typer.Option(None, "--preset", help="Single preset: original, standard, minimal, custom")
PRESETS_OPTION = typer.Option(None, "--presets", help="Comma-separated presets, e.g. standard,minimal")
OVERWRITE_OPTION = typer.Option(False, "--overwrite", "-f", help="Replace existing outputs")
RATIO_OPTION = typer.Option(None, "--ratio", "-r", help="[custom] Target ratio (0-1)")
ERROR_THRESHOLD_OPTION = typer.Option(None, "--error-threshold", help="[custom] Error threshold (default 0.01)")
MIN_FACE_COUNT_OPTION = typer.Option(None, "--min-face-count", help="[custom] Minimum face count (default 200)")
SLOPPY_OPTION = typer.Option(False, "--sloppy", help="[custom] Use grid clustering")
LOCK_BORDER_OPTION = typer.Option(True, "--lock-border/--no-lock-border", help="[custom] Pin border vertices")
ATTRIBUTE_WEIGHT_OPTION = typer.Option(None, "--attribute-weight", help="[custom] Normal weight (default 0.5)")
IGNORE_ATTRIBUTES_OPTION = typer.Option(False, "--ignore-attributes", help="[custom] Position-only error metric")
PRUNE_OPTION = typer.Option(False, "--prune", help="[custom] Remove small disconnected components")


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(1)


def _settings() -> Settings:
    try:
        return load_settings()
    except ValueError as e:
        raise _fail(str(e))


def _custom_overrides(
    error_threshold: Optional[float],
    min_face_count: Optional[int],
    sloppy: bool,
    lock_border: bool,
    attribute_weight: Optional[float],
    ignore_attributes: bool,
    prune: bool,
) -> dict[str, Any]:
    overrides: dict[str, Any] = {
        "use_sloppy": sloppy,
        "lock_border": lock_border,
        "ignore_attributes": ignore_attributes,
        "enable_prune": prune,
    }
    if error_threshold is not None:
        overrides["error_threshold"] = error_threshold
    if min_face_count is not None:
        overrides["min_face_count"] = min_face_count
    if attribute_weight is not None:
        overrides["attribute_weight"] = attribute_weight
    return overrides


def _levels_from_flags(
    preset: Optional[str],
    presets: Optional[str],
    ratio: Optional[float],
    overrides: dict[str, Any],
) -> list[QualityLevel]:
    if presets:
        return parse_preset_list(presets, ratio, overrides)
    if preset:
        return parse_preset_list(preset, ratio, overrides)[:1]
    if ratio is None:
        raise _fail("Specify --quality, --preset, --presets or --ratio")
    return [QualityLevel.custom(ratio, **overrides)]


def _progress() -> Progress:
    return Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    )


def _units_table(title: str, units: list[UnitResult]) -> Table:
    table = Table(title=title)
    table.add_column("Source", style="cyan")
    table.add_column("Quality")
    table.add_column("Triangles")
    table.add_column("Output")
    table.add_column("Status")

    for unit in units:
        if unit.success:
            status = f"[green]✓ {unit.status.value}[/green]"
        else:
            status = f"[red]✗ {unit.status.value}[/red] {unit.error_message or ''}"
        table.add_row(
            unit.source.name,
            unit.quality.display_name,
            f"{unit.triangle_count:,}" if unit.success else "-",
            str(unit.path) if unit.path else "-",
            status,
        )
    return table


def _export(source: Path, plan: list[tuple[QualityLevel, Path]], overwrite: bool, settings: Settings) -> None:
    """Run one source through ``plan`` and print the outcome."""
    for _, path in plan:
        path.parent.mkdir(parents=True, exist_ok=True)

    start = time.time()
    with QualityCache(source.parent, overwrite=overwrite, max_workers=settings.persist_workers) as cache:
        orchestrator = BatchOrchestrator(cache)
        with _progress() as progress:
            task = progress.add_task("Reducing...", total=len(plan))

            def on_progress(current: int, total: int, label: str) -> None:
                progress.update(task, total=total, completed=current - 1, description=label)

            try:
                units = orchestrator.export(source, plan, overwrite=overwrite, progress=on_progress)
            except ReducerError as e:
                raise _fail(e.message)
            progress.update(task, completed=len(plan), description="Done")

    console.print(_units_table(f"Results: {source.name}", units))
    for unit in units:
        if unit.success and not verify_file_saved(unit.path):
            console.print(f"[yellow]Warning:[/yellow] {unit.path} may not have been saved")

    failed = [unit for unit in units if not unit.success]
    if failed:
        console.print(f"[red]✗ {len(failed)} of {len(units)} levels failed[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Done in {time.time() - start:.2f}s[/green]")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    init_logging("DEBUG" if verbose else None)


@app.command()
def simplify(
    source: Path = typer.Argument(..., help="Source asset file"),
    quality: Optional[list[str]] = QUALITY_OPTION,
    preset: Optional[str] = PRESET_OPTION,
    presets: Optional[str] = PRESETS_OPTION,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (single level)"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-d", help="Output folder (several levels)"),
    overwrite: bool = OVERWRITE_OPTION,
    ratio: Optional[float] = RATIO_OPTION,
    error_threshold: Optional[float] = ERROR_THRESHOLD_OPTION,
    min_face_count: Optional[int] = MIN_FACE_COUNT_OPTION,
    sloppy: bool = SLOPPY_OPTION,
    lock_border: bool = LOCK_BORDER_OPTION,
    attribute_weight: Optional[float] = ATTRIBUTE_WEIGHT_OPTION,
    ignore_attributes: bool = IGNORE_ATTRIBUTES_OPTION,
    prune: bool = PRUNE_OPTION,
) -> None:
    """Simplify one asset to one or more quality levels."""
    if not source.is_file():
        raise _fail(f"File not found: {source}")
    settings = _settings()
    ext = settings.artifact_ext

    try:
        if quality:
            specs = [parse_quality_spec(text) for text in quality]
            plan = [(spec.level, output_file_for(spec, source, ext)) for spec in specs]
        else:
            overrides = _custom_overrides(
                error_threshold, min_face_count, sloppy, lock_border,
                attribute_weight, ignore_attributes, prune,
            )
            levels = _levels_from_flags(preset, presets, ratio, overrides)
            if len(levels) == 1:
                path = output or source.parent / f"{source.stem}_simplified{ext}"
                if path.exists() and not overwrite:
                    console.print(f"[yellow]Output exists:[/yellow] {path}")
                    console.print("Use --overwrite to replace it")
                    raise typer.Exit(1)
                plan = [(levels[0], path)]
            else:
                folder = output_dir or source.parent / f"{source.stem}_multi_quality"
                plan = [(level, folder / f"{source.stem}_{level.suffix}{ext}") for level in levels]
    except ReducerError as e:
        raise _fail(e.message)

    console.print(f"[bold]Input:[/bold] {source.name}")
    for index, (level, path) in enumerate(plan, start=1):
        console.print(f"  [{index}] {level.display_name} → {path}")
    _export(source, plan, overwrite, settings)


@app.command()
def batch(
    folder: Path = typer.Argument(..., help="Folder of source assets"),
    quality: Optional[list[str]] = QUALITY_OPTION,
    preset: Optional[str] = PRESET_OPTION,
    presets: Optional[str] = PRESETS_OPTION,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output folder (single level)"),
    output_base: Optional[Path] = typer.Option(
        None, "--output-base", "-b", help="Base folder, one subfolder per level",
    ),
    overwrite: bool = OVERWRITE_OPTION,
    ratio: Optional[float] = RATIO_OPTION,
    error_threshold: Optional[float] = ERROR_THRESHOLD_OPTION,
    min_face_count: Optional[int] = MIN_FACE_COUNT_OPTION,
    sloppy: bool = SLOPPY_OPTION,
    lock_border: bool = LOCK_BORDER_OPTION,
    attribute_weight: Optional[float] = ATTRIBUTE_WEIGHT_OPTION,
    ignore_attributes: bool = IGNORE_ATTRIBUTES_OPTION,
    prune: bool = PRUNE_OPTION,
) -> None:
    """Process every asset in a folder, one output folder per quality level."""
    if not folder.is_dir():
        raise _fail(f"Folder not found: {folder}")
    settings = _settings()

    try:
        if quality:
            specs = [parse_quality_spec(text) for text in quality]
            levels = unique_levels(spec.level for spec in specs)
            folders: dict[QualityLevel, Path] = {}
            for spec in specs:
                folders.setdefault(spec.level, spec.path)
            layout = FolderLayout(folder / "simplified_multi_quality", settings.artifact_ext, folders)
        else:
            overrides = _custom_overrides(
                error_threshold, min_face_count, sloppy, lock_border,
                attribute_weight, ignore_attributes, prune,
            )
            levels = _levels_from_flags(preset, presets, ratio, overrides)
            if len(levels) == 1:
                target = output or folder / "simplified"
                layout = FolderLayout(target, settings.artifact_ext, {levels[0]: target})
            else:
                layout = FolderLayout(output_base or folder / "simplified_multi_quality", settings.artifact_ext)
    except ReducerError as e:
        raise _fail(e.message)

    for level in levels:
        layout.folder_for(level).mkdir(parents=True, exist_ok=True)
        console.print(f"  {level.display_name} → {layout.folder_for(level)}/")

    with QualityCache(layout, overwrite=overwrite, max_workers=settings.persist_workers) as cache:
        orchestrator = BatchOrchestrator(cache)
        with _progress() as progress:
            task = progress.add_task("Processing...", total=None)

            def on_progress(current: int, total: int, label: str) -> None:
                progress.update(task, total=total, completed=current - 1, description=label)

            try:
                result = orchestrator.run_folder(folder, levels, overwrite=overwrite, progress=on_progress)
            except ReducerError as e:
                raise _fail(e.message)
            progress.update(task, completed=len(result.units), description="Done")

    console.print(_units_table("Batch Results", result.units))
    console.print(
        f"Total: {result.total_count}  "
        f"[green]Succeeded: {result.success_count}[/green]  "
        f"[red]Failed: {result.failure_count}[/red]"
    )


@app.command("multi-quality")
def multi_quality(
    source: Path = typer.Argument(..., help="Source asset file"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Output folder"),
    overwrite: bool = OVERWRITE_OPTION,
) -> None:
    """Write the Original, Standard and Minimal levels of one asset."""
    if not source.is_file():
        raise _fail(f"File not found: {source}")
    settings = _settings()
    folder = output_dir or source.parent / f"{source.stem}_multi_quality"
    plan = [
        (level, folder / f"{source.stem}_{level.suffix}{settings.artifact_ext}")
        for level in (ORIGINAL, STANDARD, MINIMAL)
    ]
    console.print(f"[bold]Input:[/bold] {source.name}  [bold]Output:[/bold] {folder}")
    _export(source, plan, overwrite, settings)


@app.command()
def inspect(
    source: Path = typer.Argument(..., help="Asset file"),
) -> None:
    """Show geometry and texture statistics of an asset."""
    if not source.is_file():
        raise _fail(f"File not found: {source}")

    reducer = AssetReducer()
    try:
        with console.status("Analyzing asset..."):
            analysis = reducer.analyze(reducer.store.load(source))
    except ReducerError as e:
        raise _fail(e.message)

    table = Table(title=f"Analysis: {source.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")

    table.add_row("Triangles", f"{analysis.triangle_count:,}")
    table.add_row("Vertices", f"{analysis.vertex_count:,}")
    table.add_row("Mesh parts", str(analysis.part_count))
    table.add_row("Nodes", str(analysis.node_count))
    table.add_row("Has normals", "✓" if analysis.has_normals else "✗")
    table.add_row("Has UVs", "✓" if analysis.has_uvs else "✗")
    table.add_row("Boundary edges", f"{analysis.boundary_edge_count:,}")
    table.add_row("Materials", str(analysis.material_count))
    table.add_row("Textures", str(analysis.texture_count))
    size = analysis.bounds_size
    table.add_row("Bounds", f"{size[0]:.3f} x {size[1]:.3f} x {size[2]:.3f}")
    for texture_format, count in sorted(analysis.texture_formats.items()):
        table.add_row(f"  {texture_format}", str(count))

    console.print(table)

    if analysis.suggested_levels:
        console.print("\n[bold]Estimated triangles per level:[/bold]")
        for level, triangles in analysis.suggested_levels:
            console.print(f"  {level.display_name}: {triangles:,} triangles ({level.target_ratio:.0%})")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host", "-h"),
    port: int = typer.Option(8000, "--port", "-p"),
) -> None:
    """Start the REST API server."""
    try:
        from asset_reducer.api import run_server
        console.print(f"[green]Starting API server at http://{host}:{port}[/green]")
        run_server(host=host, port=port)
    except ImportError:
        console.print("[red]API dependencies not installed. Run: pip install asset-reducer[api][/red]")
        raise typer.Exit(1)


@app.command("worker")
def worker(
    queue_url: str = typer.Option(..., "--queue", "-q", help="Redis URL, SQS queue URL or file:// queue"),
) -> None:
    """Start a background worker for processing jobs."""
    try:
        from asset_reducer.worker import run_worker
        console.print(f"[green]Starting worker, listening to {queue_url}[/green]")
        run_worker(queue_url)
    except ImportError:
        console.print("[red]Worker dependencies not installed. Run: pip install asset-reducer[worker][/red]")
        raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
