from __future__ import annotations

import json
import logging
from pathlib import Path
from time import perf_counter
from typing import Callable, TypeVar

import typer

from derush.config import DEFAULT_CONFIG_PATH, PRESETS, Settings, effective_configuration, load_settings, resolve_preset
from derush.errors import CancellationError
from derush.ingest.probe import probe_media
from derush.logging_config import configure_logging
from derush.pipeline import EditPipeline, PipelineState
from derush.propose.exporter import export_final_outputs, load_edit_result

app = typer.Typer(help="Automatic audio rough-cut (derush) pipeline.")
config_app = typer.Typer(help="Configuration commands.")
ingest_app = typer.Typer(help="Ingest commands.")
propose_app = typer.Typer(help="Edit plan output and review commands.")

app.add_typer(config_app, name="config")
app.add_typer(ingest_app, name="ingest")
app.add_typer(propose_app, name="propose")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_EXIT_CODE = 130


def _config_option() -> Path | None:
    return typer.Option(
        None,
        "--config",
        "-c",
        envvar="DERUSH_CONFIG",
        help=f"Path to YAML configuration file. Defaults to {DEFAULT_CONFIG_PATH} when present.",
    )


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path | None) -> Settings:
    try:
        settings = load_settings(config_path)
    except (OSError, ValueError) as exc:
        typer.echo(f"Error: could not load configuration: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path or DEFAULT_CONFIG_PATH)
    return settings


@config_app.command("show")
def show_config(config_path: Path | None = _config_option()) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@config_app.command("presets")
def show_presets() -> None:
    """Print every named preset as a full processing configuration."""

    try:
        resolved = {name: resolve_preset(name).model_dump(mode="json") for name in sorted(PRESETS)}
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps(resolved, indent=2))


@ingest_app.command("probe")
def probe(
    asset_path: str,
    config_path: Path | None = _config_option(),
) -> None:
    """Run ffprobe on an asset and print normalised stream metadata."""

    _bootstrap(config_path)
    try:
        result = probe_media(asset_path)
    except (RuntimeError, ValueError) as exc:
        logger.error("Probe failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    logger.info("Probe completed for %s", asset_path)
    typer.echo(json.dumps(result, indent=2))


@app.command("analyze")
def analyze(
    asset_path: str,
    preset: str | None = typer.Option(None, help="Named preset: default, podcast, music-video, presentation, vlog."),
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", help="Directory for JSON/CSV/review outputs."),
    basename: str | None = typer.Option(None, help="Base filename for exported artifacts. Defaults to the asset stem."),
    config_path: Path | None = _config_option(),
) -> None:
    """Run the full dérush pipeline on one asset and export the edit plan."""

    settings = _bootstrap(config_path)
    resolved_asset = Path(asset_path).expanduser().resolve()
    resolved_output_dir = output_dir or settings.output.output_dir
    resolved_basename = basename or f"{resolved_asset.stem}_edit"
    total_steps = 2

    def _report_state(state: PipelineState) -> None:
        typer.echo(f"      state: {state.value}", err=True)

    try:
        config = effective_configuration(settings, preset)
        pipeline = EditPipeline(config, settings.analysis, on_state_change=_report_state)
        result = _run_with_progress(
            1,
            total_steps,
            "Analyze asset",
            lambda: pipeline.run(str(resolved_asset)),
        )
        exported = _run_with_progress(
            2,
            total_steps,
            "Export outputs",
            lambda: export_final_outputs(
                result,
                resolved_output_dir,
                basename=resolved_basename,
                source_path=str(resolved_asset),
                include_ffmpeg_commands=settings.output.include_ffmpeg_commands,
            ),
        )
    except CancellationError as exc:
        logger.warning("Pipeline cancelled: %s", exc)
        typer.echo(f"Cancelled: {exc}", err=True)
        raise typer.Exit(code=CANCELLED_EXIT_CODE) from exc
    except (RuntimeError, ValueError) as exc:
        logger.error("Pipeline failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    statistics = result.statistics
    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "asset_path": str(resolved_asset),
                "preset": preset or settings.preset,
                "original_duration": round(statistics.original_duration, 3),
                "final_duration": round(statistics.final_duration, 3),
                "reduction_percentage": round(statistics.reduction_percentage, 2),
                "segments_kept": statistics.segments_kept,
                "segments_removed": statistics.segments_removed,
                "beats_detected": statistics.beats_detected,
                "tempo_bpm": round(statistics.tempo_bpm, 1) if statistics.tempo_bpm is not None else None,
                "outputs": {key: str(path) for key, path in exported.items()},
            },
            indent=2,
        )
    )


@propose_app.command("review")
def review_plan(
    plan_path: Path = typer.Argument(..., help="Path to an exported edit plan JSON."),
    output_dir: Path = typer.Option(Path("data/outputs"), "--output-dir", "-o", help="Directory for JSON/CSV/review outputs."),
    basename: str = typer.Option("edit_plan", help="Base filename for exported artifacts."),
    source_path: str | None = typer.Option(None, help="Optional source asset path for ffmpeg command generation."),
    include_ffmpeg_commands: bool = typer.Option(True, help="Include ffmpeg trim commands in review manifest when source_path is provided."),
) -> None:
    """Re-export an edit plan as JSON/CSV artifacts plus a review manifest."""

    try:
        result = load_edit_result(plan_path)
    except (KeyError, ValueError) as exc:
        typer.echo(f"Error: invalid edit plan {plan_path}: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    exported = export_final_outputs(
        result,
        output_dir,
        basename=basename,
        source_path=source_path,
        include_ffmpeg_commands=include_ffmpeg_commands,
    )
    typer.echo(
        json.dumps(
            {key: str(path) for key, path in exported.items()},
            indent=2,
        )
    )


if __name__ == "__main__":
    app()
