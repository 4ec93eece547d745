from __future__ import annotations

import logging
from dataclasses import dataclass, field

from derush.config import ProcessingConfiguration
from derush.models import ApprovedSegment, ContentType, Decision

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


@dataclass(slots=True)
class _Span:
    start: float
    end: float
    quality_total: float = 0.0
    window_count: int = 0
    type_counts: dict[str, int] = field(default_factory=lambda: {"speech": 0, "music": 0, "noise": 0})
    speech_start: float | None = None
    speech_end: float | None = None

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def contains_speech(self) -> bool:
        return self.speech_start is not None

    def absorb(self, other: _Span) -> None:
        self.start = min(self.start, other.start)
        self.end = max(self.end, other.end)
        self.quality_total += other.quality_total
        self.window_count += other.window_count
        for key, count in other.type_counts.items():
            self.type_counts[key] += count
        if other.speech_start is not None:
            self.speech_start = other.speech_start if self.speech_start is None else min(self.speech_start, other.speech_start)
        if other.speech_end is not None:
            self.speech_end = other.speech_end if self.speech_end is None else max(self.speech_end, other.speech_end)

    def content_type(self) -> ContentType:
        speech = self.type_counts["speech"]
        music = self.type_counts["music"]
        noise = self.type_counts["noise"]
        if speech >= music and speech >= noise:
            return "speech"
        if music >= noise:
            return "music"
        return "noise"


class SegmentAssembler:
    """Turn the ordered decision stream into approved source segments.

    Pipeline (on ``finish``):
    1) close runs of kept windows at the cut time of the first rejected window
    2) pad speech-bearing runs (asymmetric, scaled by the preservation mode, never
       uncovering a kept speech slice)
    3) coalesce runs separated by less than ``merge_gap``
    4) join short runs to the nearest neighbour across a gap shorter than both
       ``maximum_gap_duration`` and ``minimum_silence_duration``, so a confirmed silence
       is never bridged; drop isolated short runs unless they hold speech, which are
       widened instead
    5) coalesce again and assign deterministic ids in timeline order
    """

    def __init__(self, config: ProcessingConfiguration) -> None:
        self.config = config
        self.dropped_segments = 0
        self.speech_regions: list[tuple[float, float]] = []
        self._spans: list[_Span] = []
        self._open: _Span | None = None
        self._finished = False

    def add(self, decision: Decision) -> None:
        """Consume the next decision in stream order."""

        if self._finished:
            raise RuntimeError("SegmentAssembler.finish() was already called.")

        if not decision.keep:
            if self._open is not None:
                self._close(decision.boundary_time)
            return

        if self._open is None:
            self._open = _Span(start=max(0.0, decision.boundary_time), end=decision.end)

        span = self._open
        span.end = decision.end
        span.quality_total += decision.quality_score
        span.window_count += 1
        span.type_counts[decision.content_type] += 1

        if decision.content_type == "speech":
            span.speech_start = decision.start if span.speech_start is None else min(span.speech_start, decision.start)
            span.speech_end = decision.end if span.speech_end is None else max(span.speech_end, decision.end)
            self._add_speech_region(decision.start, decision.end)

    def finish(self, original_duration: float) -> list[ApprovedSegment]:
        """Close the stream and return final segments in timeline order."""

        if self._finished:
            raise RuntimeError("SegmentAssembler.finish() was already called.")
        self._finished = True

        if self._open is not None:
            self._spans.append(self._open)
            self._open = None

        spans = [_clip(span, original_duration) for span in self._spans]
        spans = [span for span in spans if span.duration > _EPSILON]
        self._pad(spans, original_duration)
        spans = _coalesce(spans, self.config.merge_gap)
        spans = self._resolve_short_spans(spans, original_duration)
        spans = _coalesce(spans, self.config.merge_gap)

        # Only speech lasting at least minimum_speech_duration drives ducking.
        self.speech_regions = [
            (max(0.0, start), min(end, original_duration))
            for start, end in self.speech_regions
            if start < original_duration
            and min(end, original_duration) - start + _EPSILON >= self.config.minimum_speech_duration
        ]

        return [
            ApprovedSegment(
                segment_id=f"s_{idx:04d}",
                start=span.start,
                end=span.end,
                quality_score=span.quality_total / span.window_count if span.window_count else 0.0,
                content_type=span.content_type(),
                contains_speech=span.contains_speech,
            )
            for idx, span in enumerate(spans, start=1)
        ]

    def _close(self, boundary: float) -> None:
        span = self._open
        self._open = None
        if span is None:
            return
        if boundary > span.start:
            span.end = boundary
        self._spans.append(span)

    def _add_speech_region(self, start: float, end: float) -> None:
        if self.speech_regions and start <= self.speech_regions[-1][1] + _EPSILON:
            last_start, last_end = self.speech_regions[-1]
            self.speech_regions[-1] = (last_start, max(last_end, end))
        else:
            self.speech_regions.append((start, end))

    def _pad(self, spans: list[_Span], original_duration: float) -> None:
        before, after = self.config.speech_padding
        for span in spans:
            if not span.contains_speech:
                continue
            span.start = max(0.0, span.start - before)
            span.end = min(original_duration, span.end + after)
            if span.speech_start is not None:
                span.start = min(span.start, span.speech_start)
            if span.speech_end is not None:
                span.end = max(span.end, min(span.speech_end, original_duration))

    def _resolve_short_spans(self, spans: list[_Span], original_duration: float) -> list[_Span]:
        minimum = self.config.minimum_segment_duration
        result = sorted(spans, key=lambda span: (span.start, span.end))

        changed = True
        while changed:
            changed = False
            for idx, span in enumerate(result):
                if span.duration + _EPSILON >= minimum:
                    continue
                if span.start <= 0.0 and span.end >= original_duration:
                    continue

                neighbor_idx = self._nearest_neighbor(result, idx)
                if neighbor_idx is not None:
                    low, high = sorted((idx, neighbor_idx))
                    result[low].absorb(result[high])
                    del result[high]
                elif span.contains_speech:
                    _widen(span, minimum, original_duration)
                else:
                    logger.debug("Dropping isolated short segment %.3f-%.3fs", span.start, span.end)
                    self.dropped_segments += 1
                    del result[idx]
                changed = True
                break

        return result

    def _nearest_neighbor(self, spans: list[_Span], idx: int) -> int | None:
        span = spans[idx]
        candidates: list[tuple[float, int]] = []
        if idx > 0:
            candidates.append((span.start - spans[idx - 1].end, idx - 1))
        if idx + 1 < len(spans):
            candidates.append((spans[idx + 1].start - span.end, idx + 1))

        reach = min(self.config.maximum_gap_duration, self.config.minimum_silence_duration)
        eligible = [(gap, neighbor) for gap, neighbor in candidates if gap < reach - _EPSILON]
        if not eligible:
            return None
        return min(eligible)[1]


def coalesce_ranges(ranges: list[tuple[float, float]], merge_gap: float) -> list[tuple[float, float]]:
    """Merge (start, end) ranges separated by less than ``merge_gap``."""

    spans = [_Span(start=start, end=end) for start, end in ranges]
    return [(span.start, span.end) for span in _coalesce(spans, merge_gap)]


def _coalesce(spans: list[_Span], merge_gap: float) -> list[_Span]:
    if not spans:
        return []

    timeline = sorted(spans, key=lambda span: (span.start, span.end))
    merged: list[_Span] = [timeline[0]]

    for span in timeline[1:]:
        last = merged[-1]
        if span.start - last.end < merge_gap:
            last.absorb(span)
        else:
            merged.append(span)

    return merged


def _clip(span: _Span, original_duration: float) -> _Span:
    span.start = max(0.0, span.start)
    span.end = min(span.end, original_duration)
    return span


def _widen(span: _Span, minimum: float, original_duration: float) -> None:
    missing = minimum - span.duration
    start = max(0.0, span.start - missing / 2.0)
    end = min(original_duration, start + minimum)
    start = max(0.0, end - minimum)
    span.start = start
    span.end = end
