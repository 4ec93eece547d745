from __future__ import annotations

import math
from collections.abc import Sequence

from derush.models import (
    ApprovedSegment,
    AutomationCurve,
    AutomationPoint,
    CrossfadeRegion,
    TimelineEntry,
)
from derush.propose.segment_builder import coalesce_ranges

EQUAL_POWER_MIDPOINT = math.cos(math.pi / 4.0)
MUSIC_TARGET = "music"
_EPSILON = 1e-9


def db_to_gain(level_db: float) -> float:
    """Convert a dB gain change to a linear factor."""

    return float(10.0 ** (level_db / 20.0))


class CrossfadeProcessor:
    """Place segments on the output timeline with equal-power crossfades at every boundary.

    Consecutive segments overlap by the crossfade length, bounded by half of the shorter
    segment, so the composition shortens by exactly the sum of those overlaps.
    """

    def __init__(self, crossfade_duration: float) -> None:
        self.crossfade_duration = max(0.0, crossfade_duration)

    def overlap_between(self, outgoing: ApprovedSegment, incoming: ApprovedSegment) -> float:
        return max(0.0, min(self.crossfade_duration, outgoing.duration / 2.0, incoming.duration / 2.0))

    def place(self, segments: Sequence[ApprovedSegment]) -> tuple[list[TimelineEntry], list[CrossfadeRegion]]:
        """Compute timeline placements and the declared crossfade regions."""

        overlaps = [self.overlap_between(a, b) for a, b in zip(segments, segments[1:])]
        entries: list[TimelineEntry] = []
        regions: list[CrossfadeRegion] = []
        cursor = 0.0

        for idx, segment in enumerate(segments):
            fade_in = overlaps[idx - 1] if idx > 0 else 0.0
            fade_out = overlaps[idx] if idx < len(overlaps) else 0.0
            timeline_start = cursor - fade_in
            timeline_end = timeline_start + segment.duration

            if fade_in > 0.0:
                regions.append(
                    CrossfadeRegion(
                        outgoing_id=segments[idx - 1].segment_id,
                        incoming_id=segment.segment_id,
                        timeline_start=timeline_start,
                        timeline_end=cursor,
                    )
                )

            entries.append(
                TimelineEntry(
                    segment=segment,
                    timeline_start=timeline_start,
                    timeline_end=timeline_end,
                    fade_in=fade_in,
                    fade_out=fade_out,
                )
            )
            cursor = timeline_end

        return entries, regions

    def curves(self, timeline: Sequence[TimelineEntry]) -> list[AutomationCurve]:
        """Per-segment gain envelopes carrying the fade-in/fade-out ramps."""

        curves: list[AutomationCurve] = []
        for entry in timeline:
            start = entry.timeline_start
            end = entry.timeline_end
            points: list[AutomationPoint] = []

            if entry.fade_in > 0.0:
                points.append(AutomationPoint(start, 0.0))
                points.append(AutomationPoint(start + entry.fade_in / 2.0, EQUAL_POWER_MIDPOINT))
                points.append(AutomationPoint(start + entry.fade_in, 1.0))
            else:
                points.append(AutomationPoint(start, 1.0))

            if entry.fade_out > 0.0:
                points.append(AutomationPoint(end - entry.fade_out, 1.0))
                points.append(AutomationPoint(end - entry.fade_out / 2.0, EQUAL_POWER_MIDPOINT))
                points.append(AutomationPoint(end, 0.0))
            else:
                points.append(AutomationPoint(end, 1.0))

            curves.append(
                AutomationCurve(
                    target=f"segment:{entry.segment.segment_id}",
                    kind="crossfade",
                    points=tuple(_dedupe(points)),
                )
            )
        return curves


class VoiceDuckingAutomator:
    """Lower the music bed under speech with attack/release ramps instead of steps."""

    def __init__(self, duck_db: float = -15.0, attack: float = 0.15, release: float = 0.30) -> None:
        self.duck_db = duck_db
        self.duck_gain = db_to_gain(duck_db)
        self.attack = max(0.0, attack)
        self.release = max(0.0, release)

    def build(
        self,
        speech_regions: Sequence[tuple[float, float]],
        music_regions: Sequence[tuple[float, float]],
        timeline_duration: float,
    ) -> AutomationCurve | None:
        """Return the music gain curve, or None when no speech overlaps music."""

        overlaps = intersect_ranges(speech_regions, music_regions)
        if not overlaps:
            return None

        # Closer than attack + release would make the ramps collide; duck straight through.
        ducked = coalesce_ranges(overlaps, self.attack + self.release)
        # Speech at the very start has no room to ramp; the bed begins already ducked.
        opening_gain = self.duck_gain if ducked[0][0] <= _EPSILON else 1.0
        points = [AutomationPoint(0.0, opening_gain)]

        for start, end in ducked:
            if start > _EPSILON:
                points.append(AutomationPoint(max(points[-1].time, start - self.attack), 1.0))
                points.append(AutomationPoint(start, self.duck_gain))
            points.append(AutomationPoint(end, self.duck_gain))
            # Speech running to the end of the timeline stays ducked to the last sample.
            if end < timeline_duration - _EPSILON:
                points.append(AutomationPoint(min(timeline_duration, end + self.release), 1.0))

        if points[-1].time < timeline_duration:
            points.append(AutomationPoint(timeline_duration, points[-1].gain))

        return AutomationCurve(target=MUSIC_TARGET, kind="ducking", points=tuple(_dedupe(points)))


def map_to_timeline(
    regions: Sequence[tuple[float, float]],
    timeline: Sequence[TimelineEntry],
) -> list[tuple[float, float]]:
    """Translate source-time ranges into composition-timeline ranges."""

    mapped: list[tuple[float, float]] = []
    for start, end in regions:
        for entry in timeline:
            overlap_start = max(start, entry.segment.start)
            overlap_end = min(end, entry.segment.end)
            if overlap_end <= overlap_start:
                continue
            mapped.append((entry.to_timeline(overlap_start), entry.to_timeline(overlap_end)))
    return coalesce_ranges(mapped, 0.0)


def intersect_ranges(
    first: Sequence[tuple[float, float]],
    second: Sequence[tuple[float, float]],
) -> list[tuple[float, float]]:
    """Pairwise intersections of two range lists, in time order."""

    intersections = [
        (max(a_start, b_start), min(a_end, b_end))
        for a_start, a_end in first
        for b_start, b_end in second
        if min(a_end, b_end) > max(a_start, b_start)
    ]
    return sorted(intersections)


def _dedupe(points: list[AutomationPoint]) -> list[AutomationPoint]:
    deduped: list[AutomationPoint] = []
    for point in points:
        if deduped and deduped[-1] == point:
            continue
        deduped.append(point)
    return deduped
