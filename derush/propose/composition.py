from __future__ import annotations

import logging
from collections.abc import Sequence

from derush.config import ProcessingConfiguration
from derush.errors import CompositionError
from derush.models import (
    AnalysisSummary,
    ApprovedSegment,
    AutomationCurve,
    CompositionPlan,
    EditResult,
    EditStatistics,
)
from derush.propose.automation import CrossfadeProcessor, VoiceDuckingAutomator, map_to_timeline

logger = logging.getLogger(__name__)

DURATION_EPSILON = 1e-6


class CompositionBuilder:
    """Validate approved segments and emit the immutable plan with its statistics."""

    def __init__(self, config: ProcessingConfiguration) -> None:
        self.config = config
        self.crossfades = CrossfadeProcessor(config.crossfade_duration if config.enable_crossfades else 0.0)
        self.ducking = VoiceDuckingAutomator(
            duck_db=config.voice_ducking_db,
            attack=config.ducking_attack,
            release=config.ducking_release,
        )

    def build(
        self,
        segments: Sequence[ApprovedSegment],
        original_duration: float,
        *,
        speech_regions: Sequence[tuple[float, float]] = (),
        music_regions: Sequence[tuple[float, float]] | None = None,
        summary: AnalysisSummary | None = None,
        processing_time: float = 0.0,
    ) -> EditResult:
        """Place segments, derive automation and compute edit statistics.

        ``speech_regions`` and ``music_regions`` are in source time; music defaults to the
        whole kept material.
        """

        ordered = tuple(segments)
        validate_segments(ordered, original_duration)

        timeline, regions = self.crossfades.place(ordered)
        final_duration = timeline[-1].timeline_end if timeline else 0.0
        overlap = sum(region.duration for region in regions)

        curves: list[AutomationCurve] = self.crossfades.curves(timeline)
        if self.config.enable_voice_ducking and timeline:
            timeline_speech = map_to_timeline(speech_regions, timeline)
            if music_regions is None:
                timeline_music = [(0.0, final_duration)]
            else:
                timeline_music = map_to_timeline(music_regions, timeline)
            ducking_curve = self.ducking.build(timeline_speech, timeline_music, final_duration)
            if ducking_curve is not None:
                curves.append(ducking_curve)

        plan = CompositionPlan(
            segments=ordered,
            timeline=tuple(timeline),
            crossfades=tuple(regions),
            curves=tuple(curves),
            original_duration=original_duration,
            final_duration=final_duration,
        )
        validate_plan(plan)

        statistics = compute_statistics(
            plan,
            crossfade_overlap=overlap,
            summary=summary,
            processing_time=processing_time,
        )
        logger.info(
            "Composition: %s segments, %.3fs -> %.3fs (%.1f%% reduction)",
            statistics.segments_kept,
            original_duration,
            final_duration,
            statistics.reduction_percentage,
        )
        return EditResult(composition_plan=plan, statistics=statistics)


def validate_segments(segments: Sequence[ApprovedSegment], original_duration: float) -> None:
    """Reject unordered, overlapping, empty or out-of-range segments."""

    if original_duration < 0:
        raise CompositionError(f"Original duration must be non-negative, got {original_duration}.")

    total = 0.0
    previous: ApprovedSegment | None = None
    for segment in segments:
        if segment.duration <= 0:
            raise CompositionError(f"Segment {segment.segment_id} has non-positive duration.")
        if segment.start < -DURATION_EPSILON or segment.end > original_duration + DURATION_EPSILON:
            raise CompositionError(
                f"Segment {segment.segment_id} ({segment.start:.3f}-{segment.end:.3f}s) "
                f"lies outside the source (0-{original_duration:.3f}s)."
            )
        if previous is not None and segment.start < previous.end - DURATION_EPSILON:
            raise CompositionError(
                f"Segment {segment.segment_id} overlaps or precedes {previous.segment_id}."
            )
        total += segment.duration
        previous = segment

    if total > original_duration + DURATION_EPSILON:
        raise CompositionError(
            f"Approved duration {total:.3f}s exceeds original duration {original_duration:.3f}s."
        )


def validate_plan(plan: CompositionPlan) -> None:
    """Check that timeline overlaps happen only inside declared crossfade regions."""

    declared = {(region.outgoing_id, region.incoming_id): region for region in plan.crossfades}
    for previous, current in zip(plan.timeline, plan.timeline[1:]):
        overlap = previous.timeline_end - current.timeline_start
        if overlap <= DURATION_EPSILON:
            continue
        region = declared.get((previous.segment.segment_id, current.segment.segment_id))
        if region is None or abs(region.duration - overlap) > DURATION_EPSILON:
            raise CompositionError(
                f"Undeclared overlap between {previous.segment.segment_id} and "
                f"{current.segment.segment_id}."
            )

    if plan.final_duration > plan.original_duration + DURATION_EPSILON:
        raise CompositionError("Final duration exceeds the original duration.")


def compute_statistics(
    plan: CompositionPlan,
    *,
    crossfade_overlap: float,
    summary: AnalysisSummary | None = None,
    processing_time: float = 0.0,
) -> EditStatistics:
    original = plan.original_duration
    final = plan.final_duration
    reduction = (1.0 - final / original) * 100.0 if original > 0 else 0.0

    kept_duration = sum(segment.duration for segment in plan.segments)
    if kept_duration > 0:
        average_quality = sum(s.quality_score * s.duration for s in plan.segments) / kept_duration
    else:
        average_quality = 0.0

    summary = summary or AnalysisSummary()
    return EditStatistics(
        original_duration=original,
        final_duration=final,
        reduction_percentage=max(0.0, min(100.0, reduction)),
        segments_kept=len(plan.segments),
        segments_removed=count_removed_ranges(plan.segments, original),
        average_quality=average_quality,
        windows_analyzed=summary.windows_analyzed,
        speech_windows=summary.speech_windows,
        music_windows=summary.music_windows,
        noise_windows=summary.noise_windows,
        degraded_windows=summary.degraded_windows,
        mean_confidence=summary.mean_confidence,
        beats_detected=summary.beats_detected,
        tempo_bpm=summary.tempo_bpm,
        crossfade_overlap=crossfade_overlap,
        processing_time=processing_time,
    )


def count_removed_ranges(segments: Sequence[ApprovedSegment], original_duration: float) -> int:
    """Number of source gaps left uncovered by the approved segments."""

    removed = 0
    cursor = 0.0
    for segment in segments:
        if segment.start - cursor > DURATION_EPSILON:
            removed += 1
        cursor = max(cursor, segment.end)
    if original_duration - cursor > DURATION_EPSILON:
        removed += 1
    return removed

