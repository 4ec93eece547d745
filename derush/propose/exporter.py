from __future__ import annotations

import csv
import json
import shlex
from dataclasses import asdict
from pathlib import Path
from typing import Any

from derush.models import (
    ApprovedSegment,
    AutomationCurve,
    AutomationPoint,
    CompositionPlan,
    CrossfadeRegion,
    EditResult,
    EditStatistics,
    TimelineEntry,
)


def export_edit_result(result: EditResult, output_path: str | Path) -> Path:
    """Export an edit result to JSON (default) or a per-segment CSV, based on file extension."""

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() == ".csv":
        _write_csv(result, path)
    else:
        _write_json(result, path)

    return path


def export_final_outputs(
    result: EditResult,
    output_dir: str | Path,
    *,
    basename: str = "edit_plan",
    source_path: str | None = None,
    include_ffmpeg_commands: bool = True,
) -> dict[str, Path]:
    """Export JSON/CSV plan files and a review manifest for quick triage."""

    resolved_output_dir = Path(output_dir)
    resolved_output_dir.mkdir(parents=True, exist_ok=True)

    json_path = resolved_output_dir / f"{basename}.json"
    csv_path = resolved_output_dir / f"{basename}.csv"
    review_path = resolved_output_dir / f"{basename}_review.json"

    export_edit_result(result, json_path)
    export_edit_result(result, csv_path)

    review_manifest = generate_review_manifest(
        result,
        source_path=source_path,
        include_ffmpeg_commands=include_ffmpeg_commands,
    )
    review_path.write_text(json.dumps(review_manifest, indent=2, ensure_ascii=False), encoding="utf-8")

    return {
        "json": json_path,
        "csv": csv_path,
        "review": review_path,
    }


def generate_review_manifest(
    result: EditResult,
    *,
    source_path: str | None = None,
    include_ffmpeg_commands: bool = True,
) -> list[dict[str, Any]]:
    """Build a lightweight review manifest, one entry per kept segment."""

    manifest: list[dict[str, Any]] = []
    for idx, entry in enumerate(result.composition_plan.timeline, start=1):
        segment = entry.segment
        row: dict[str, Any] = {
            "index": idx,
            "segment_id": segment.segment_id,
            "source_start": round(segment.start, 3),
            "source_end": round(segment.end, 3),
            "timeline_start": round(entry.timeline_start, 3),
            "timeline_end": round(entry.timeline_end, 3),
            "duration_seconds": round(segment.duration, 3),
            "content_type": segment.content_type,
            "quality_score": round(segment.quality_score, 4),
            "confidence": _confidence_label(segment.quality_score),
        }
        if include_ffmpeg_commands and source_path:
            row["ffmpeg_command"] = build_ffmpeg_clip_command(
                source_path=source_path,
                segment=segment,
            )
        manifest.append(row)

    return manifest


def build_ffmpeg_clip_command(
    *,
    source_path: str,
    segment: ApprovedSegment,
    output_dir: str = "segments",
) -> str:
    """Generate a copy-paste ffmpeg command that trims one approved segment."""

    start = max(0.0, segment.start)
    output_name = f"{segment.segment_id}.wav"
    output_path = f"{output_dir.rstrip('/')}/{output_name}"

    quoted_source = shlex.quote(source_path)
    quoted_output = shlex.quote(output_path)

    return (
        "ffmpeg "
        f"-ss {start:.3f} "
        f"-i {quoted_source} "
        f"-t {segment.duration:.3f} "
        "-vn -c:a pcm_s16le "
        f"{quoted_output}"
    )


def load_edit_result(path: str | Path) -> EditResult:
    """Load an edit result from the exporter JSON contract for downstream review tooling."""

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Edit result contract must be a JSON object.")

    plan_payload = payload.get("composition_plan")
    stats_payload = payload.get("statistics")
    if not isinstance(plan_payload, dict) or not isinstance(stats_payload, dict):
        raise ValueError("Edit result contract requires 'composition_plan' and 'statistics' objects.")

    segments = tuple(_segment_from_row(row, idx) for idx, row in enumerate(plan_payload.get("segments", []), start=1))
    by_id = {segment.segment_id: segment for segment in segments}

    timeline: list[TimelineEntry] = []
    for idx, row in enumerate(plan_payload.get("timeline", []), start=1):
        if not isinstance(row, dict):
            raise ValueError(f"Timeline row {idx} must be an object.")
        segment = _segment_from_row(row.get("segment"), idx)
        timeline.append(
            TimelineEntry(
                segment=by_id.get(segment.segment_id, segment),
                timeline_start=float(row["timeline_start"]),
                timeline_end=float(row["timeline_end"]),
                fade_in=float(row.get("fade_in", 0.0)),
                fade_out=float(row.get("fade_out", 0.0)),
            )
        )

    crossfades = tuple(
        CrossfadeRegion(
            outgoing_id=str(row["outgoing_id"]),
            incoming_id=str(row["incoming_id"]),
            timeline_start=float(row["timeline_start"]),
            timeline_end=float(row["timeline_end"]),
        )
        for row in plan_payload.get("crossfades", [])
    )
    curves = tuple(
        AutomationCurve(
            target=str(row["target"]),
            kind=row["kind"],
            points=tuple(AutomationPoint(time=float(p["time"]), gain=float(p["gain"])) for p in row["points"]),
        )
        for row in plan_payload.get("curves", [])
    )

    plan = CompositionPlan(
        segments=segments,
        timeline=tuple(timeline),
        crossfades=crossfades,
        curves=curves,
        original_duration=float(plan_payload["original_duration"]),
        final_duration=float(plan_payload["final_duration"]),
    )
    tempo = stats_payload.get("tempo_bpm")
    statistics = EditStatistics(
        original_duration=float(stats_payload["original_duration"]),
        final_duration=float(stats_payload["final_duration"]),
        reduction_percentage=float(stats_payload["reduction_percentage"]),
        segments_kept=int(stats_payload["segments_kept"]),
        segments_removed=int(stats_payload["segments_removed"]),
        average_quality=float(stats_payload["average_quality"]),
        windows_analyzed=int(stats_payload.get("windows_analyzed", 0)),
        speech_windows=int(stats_payload.get("speech_windows", 0)),
        music_windows=int(stats_payload.get("music_windows", 0)),
        noise_windows=int(stats_payload.get("noise_windows", 0)),
        degraded_windows=int(stats_payload.get("degraded_windows", 0)),
        mean_confidence=float(stats_payload.get("mean_confidence", 0.0)),
        beats_detected=int(stats_payload.get("beats_detected", 0)),
        tempo_bpm=float(tempo) if tempo is not None else None,
        crossfade_overlap=float(stats_payload.get("crossfade_overlap", 0.0)),
        processing_time=float(stats_payload.get("processing_time", 0.0)),
    )
    return EditResult(composition_plan=plan, statistics=statistics)


def _segment_from_row(row: Any, idx: int) -> ApprovedSegment:
    if not isinstance(row, dict):
        raise ValueError(f"Segment row {idx} must be an object.")
    content_type = str(row["content_type"])
    if content_type not in {"speech", "music", "noise"}:
        raise ValueError(f"Segment row {idx} has unknown content type '{content_type}'.")
    return ApprovedSegment(
        segment_id=str(row["segment_id"]),
        start=float(row["start"]),
        end=float(row["end"]),
        quality_score=float(row["quality_score"]),
        content_type=content_type,  # type: ignore[arg-type]
        contains_speech=bool(row.get("contains_speech", False)),
    )


def _write_json(result: EditResult, path: Path) -> None:
    payload = asdict(result)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _write_csv(result: EditResult, path: Path) -> None:
    fields = [
        "segment_id",
        "source_start",
        "source_end",
        "timeline_start",
        "timeline_end",
        "duration_seconds",
        "fade_in",
        "fade_out",
        "content_type",
        "contains_speech",
        "quality_score",
        "confidence",
    ]

    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fields)
        writer.writeheader()
        for entry in result.composition_plan.timeline:
            segment = entry.segment
            writer.writerow(
                {
                    "segment_id": segment.segment_id,
                    "source_start": f"{segment.start:.3f}",
                    "source_end": f"{segment.end:.3f}",
                    "timeline_start": f"{entry.timeline_start:.3f}",
                    "timeline_end": f"{entry.timeline_end:.3f}",
                    "duration_seconds": f"{segment.duration:.3f}",
                    "fade_in": f"{entry.fade_in:.3f}",
                    "fade_out": f"{entry.fade_out:.3f}",
                    "content_type": segment.content_type,
                    "contains_speech": int(segment.contains_speech),
                    "quality_score": f"{segment.quality_score:.4f}",
                    "confidence": _confidence_label(segment.quality_score),
                }
            )


def _confidence_label(score: float) -> str:
    if score >= 0.8:
        return "high"
    if score >= 0.6:
        return "medium"
    return "low"
