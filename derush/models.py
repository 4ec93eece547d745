from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Literal

import numpy as np

from derush.config import AnalysisSettings, ProcessingConfiguration

ContentType = Literal["speech", "music", "noise"]
TransientType = Literal["kick", "snare", "hihat", "other"]
DecisionReason = Literal[
    "speech_preserved",
    "silence_removed",
    "short_pause_kept",
    "music_preserved",
    "quality_gate_rejected",
    "quality_kept",
    "quality_rejected",
]
CurveKind = Literal["crossfade", "ducking"]


@dataclass(frozen=True, slots=True, eq=False)
class AudioBuffer:
    """One analysis window of canonical mono float32 PCM."""

    index: int
    samples: np.ndarray
    timestamp: float
    sample_rate: int
    channel_count: int = 1

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frame_count / float(self.sample_rate)

    @property
    def center_time(self) -> float:
        return self.timestamp + (self.frame_count / 2.0) / float(self.sample_rate)


@dataclass(frozen=True, slots=True)
class SpectralFeatures:
    """Descriptive per-window spectral and level features."""

    peak_frequency: float
    spectral_centroid: float
    spectral_spread: float
    spectral_energy: float
    rms_db: float
    spectral_flatness: float = 0.0


@dataclass(frozen=True, slots=True)
class BandEnergies:
    kick: float
    snare: float
    hihat: float
    total: float

    def get(self, band: str) -> float:
        return float(getattr(self, band))


@dataclass(frozen=True, slots=True)
class SpectralFrame:
    """Analyzer output for one window, shared read-only by the classifier and beat detector."""

    index: int
    center_time: float
    features: SpectralFeatures
    bands: BandEnergies
    boundary_zero_crossing: float | None = None
    degraded: bool = False


@dataclass(frozen=True, slots=True)
class Classification:
    """Speech/music/noise probabilities for one window."""

    speech: float
    music: float
    noise: float
    timestamp: float
    degraded: bool = False

    @property
    def dominant_type(self) -> ContentType:
        if self.speech >= self.music and self.speech >= self.noise:
            return "speech"
        if self.music >= self.noise:
            return "music"
        return "noise"

    @property
    def confidence(self) -> float:
        return self.probability(self.dominant_type)

    def probability(self, content_type: ContentType) -> float:
        return float(getattr(self, content_type))


@dataclass(frozen=True, slots=True)
class BeatPoint:
    timestamp: float
    strength: float
    transient_type: TransientType
    confidence: float


@dataclass(frozen=True, slots=True)
class AnalyzedWindow:
    """Join of spectral, classification, beat and external quality data for one window.

    ``start``/``end`` bound the hop-wide slice of source time the window decides for.
    """

    index: int
    start: float
    end: float
    features: SpectralFeatures
    classification: Classification
    nearest_beat: BeatPoint | None = None
    external_quality: float | None = None
    zero_crossing: float | None = None
    tempo_bpm: float | None = None
    degraded: bool = False

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class Decision:
    """Keep/reject verdict for one window."""

    index: int
    start: float
    end: float
    keep: bool
    quality_score: float
    reason: DecisionReason
    content_type: ContentType
    cut_time: float | None = None
    quality_tags: tuple[str, ...] = ()

    @property
    def boundary_time(self) -> float:
        return self.cut_time if self.cut_time is not None else self.start


@dataclass(frozen=True, slots=True)
class ApprovedSegment:
    """Source time range retained in the edit."""

    segment_id: str
    start: float
    end: float
    quality_score: float
    content_type: ContentType
    contains_speech: bool = False

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class AutomationPoint:
    time: float
    gain: float


@dataclass(frozen=True, slots=True)
class AutomationCurve:
    """Gain control points on the composition timeline, non-decreasing in time."""

    target: str
    kind: CurveKind
    points: tuple[AutomationPoint, ...]

    def __post_init__(self) -> None:
        for previous, current in zip(self.points, self.points[1:]):
            if current.time < previous.time:
                raise ValueError(
                    f"Automation curve '{self.target}' is not monotonic at t={current.time:.6f}"
                )

    def gain_at(self, time: float) -> float:
        if not self.points:
            return 1.0
        times = np.array([point.time for point in self.points], dtype=np.float64)
        gains = np.array([point.gain for point in self.points], dtype=np.float64)
        return float(np.interp(time, times, gains))


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    """Placement of an approved segment on the composition timeline."""

    segment: ApprovedSegment
    timeline_start: float
    timeline_end: float
    fade_in: float = 0.0
    fade_out: float = 0.0

    def to_timeline(self, source_time: float) -> float:
        return self.timeline_start + (source_time - self.segment.start)


@dataclass(frozen=True, slots=True)
class CrossfadeRegion:
    outgoing_id: str
    incoming_id: str
    timeline_start: float
    timeline_end: float

    @property
    def duration(self) -> float:
        return self.timeline_end - self.timeline_start


@dataclass(frozen=True, slots=True)
class CompositionPlan:
    """Ordered, validated edit decision list with its mix automation."""

    segments: tuple[ApprovedSegment, ...]
    timeline: tuple[TimelineEntry, ...]
    crossfades: tuple[CrossfadeRegion, ...]
    curves: tuple[AutomationCurve, ...]
    original_duration: float
    final_duration: float


@dataclass(frozen=True, slots=True)
class EditStatistics:
    original_duration: float
    final_duration: float
    reduction_percentage: float
    segments_kept: int
    segments_removed: int
    average_quality: float
    windows_analyzed: int = 0
    speech_windows: int = 0
    music_windows: int = 0
    noise_windows: int = 0
    degraded_windows: int = 0
    mean_confidence: float = 0.0
    beats_detected: int = 0
    tempo_bpm: float | None = None
    crossfade_overlap: float = 0.0
    processing_time: float = field(default=0.0, compare=False)


@dataclass(frozen=True, slots=True)
class EditResult:
    composition_plan: CompositionPlan
    statistics: EditStatistics


@dataclass(slots=True)
class AnalysisSummary:
    """Running counters collected while windows flow through the decision stage."""

    windows_analyzed: int = 0
    speech_windows: int = 0
    music_windows: int = 0
    noise_windows: int = 0
    degraded_windows: int = 0
    confidence_total: float = 0.0
    beats_detected: int = 0
    tempo_bpm: float | None = None

    @property
    def mean_confidence(self) -> float:
        if not self.windows_analyzed:
            return 0.0
        return self.confidence_total / self.windows_analyzed

    def record(self, window: AnalyzedWindow) -> None:
        self.windows_analyzed += 1
        self.confidence_total += window.classification.confidence
        dominant = window.classification.dominant_type
        if dominant == "speech":
            self.speech_windows += 1
        elif dominant == "music":
            self.music_windows += 1
        else:
            self.noise_windows += 1
        if window.degraded or window.classification.degraded:
            self.degraded_windows += 1


@dataclass(slots=True)
class PipelineContext:
    """Per-run state handed to every stage; there is no process-wide pipeline state."""

    analysis: AnalysisSettings
    config: ProcessingConfiguration
    cancel_event: threading.Event = field(default_factory=threading.Event)
    failure: BaseException | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def fail(self, exc: BaseException) -> None:
        with self._lock:
            if self.failure is None:
                self.failure = exc
        self.cancel_event.set()
