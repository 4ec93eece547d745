from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from derush.channels import Channel, ChannelClosed, ordered_map
from derush.config import (
    AnalysisSettings,
    ProcessingConfiguration,
    validate_analysis_settings,
    validate_configuration,
)
from derush.errors import CancellationError, InputError
from derush.features.beats import BeatDetector
from derush.features.classifier import ClassificationModel, ContentClassifier
from derush.features.spectral import SpectralAnalyzer
from derush.ingest.decoders import PcmDecoder, open_decoder
from derush.ingest.stream_extractor import StreamExtractor
from derush.models import (
    AnalysisSummary,
    AnalyzedWindow,
    AudioBuffer,
    BeatPoint,
    Classification,
    Decision,
    EditResult,
    PipelineContext,
    SpectralFrame,
)
from derush.propose.composition import CompositionBuilder
from derush.propose.segment_builder import SegmentAssembler
from derush.scoring.decision import DecisionEngine, SilenceRunResolver, effective_beat_tolerance

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    ANALYZING = "analyzing"
    DECIDING = "deciding"
    ASSEMBLING = "assembling"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_FORWARD_ORDER = (
    PipelineState.IDLE,
    PipelineState.EXTRACTING,
    PipelineState.ANALYZING,
    PipelineState.DECIDING,
    PipelineState.ASSEMBLING,
    PipelineState.COMPLETED,
)
_TERMINAL_STATES = frozenset({PipelineState.COMPLETED, PipelineState.CANCELLED, PipelineState.FAILED})


class QualityProvider(Protocol):
    """External per-range quality score (for example a video quality analyser)."""

    def quality_for_range(self, start: float, end: float) -> float | None: ...


@dataclass(frozen=True, slots=True)
class ClassifiedFrame:
    frame: SpectralFrame
    classification: Classification


@dataclass(frozen=True, slots=True)
class BeatUpdate:
    """Beats finalised after a frame (``index`` is None for the end-of-stream flush)."""

    index: int | None
    beats: tuple[BeatPoint, ...]
    tempo_bpm: float | None
    beats_detected: int


class WindowJoiner:
    """Merge classified frames with beat updates into analysed windows.

    Windows are held back ``lookahead`` frames so every beat that can fall within the
    alignment tolerance of a window's boundary is already known when it is released.
    """

    def __init__(
        self,
        *,
        hop_seconds: float,
        tolerance: float,
        beat_latency: float,
        quality_provider: QualityProvider | None = None,
    ) -> None:
        self.hop_seconds = hop_seconds
        self.tolerance = tolerance
        self.lookahead = int(math.ceil((tolerance + beat_latency) / hop_seconds)) + 2
        self.quality_provider = quality_provider
        self.tempo_bpm: float | None = None
        self.beats_detected = 0
        self._frames: deque[ClassifiedFrame] = deque()
        self._beats: deque[BeatPoint] = deque()

    def push(self, item: ClassifiedFrame, update: BeatUpdate) -> list[AnalyzedWindow]:
        self._frames.append(item)
        self._absorb(update)
        released: list[AnalyzedWindow] = []
        while len(self._frames) > self.lookahead:
            released.append(self._join(self._frames.popleft()))
        return released

    def finish(self, final_update: BeatUpdate | None = None) -> list[AnalyzedWindow]:
        if final_update is not None:
            self._absorb(final_update)
        released = [self._join(item) for item in self._frames]
        self._frames.clear()
        return released

    def _absorb(self, update: BeatUpdate) -> None:
        self._beats.extend(update.beats)
        self.tempo_bpm = update.tempo_bpm
        self.beats_detected = update.beats_detected

    def _join(self, item: ClassifiedFrame) -> AnalyzedWindow:
        frame = item.frame
        half_hop = self.hop_seconds / 2.0
        start = max(0.0, frame.center_time - half_hop)
        end = frame.center_time + half_hop

        while self._beats and self._beats[0].timestamp < start - self.tolerance - self.hop_seconds:
            self._beats.popleft()
        nearest = min(self._beats, key=lambda beat: abs(beat.timestamp - start), default=None)

        external_quality = None
        if self.quality_provider is not None:
            score = self.quality_provider.quality_for_range(start, end)
            if score is not None:
                external_quality = max(0.0, min(1.0, float(score)))

        return AnalyzedWindow(
            index=frame.index,
            start=start,
            end=end,
            features=frame.features,
            classification=item.classification,
            nearest_beat=nearest,
            external_quality=external_quality,
            zero_crossing=frame.boundary_zero_crossing,
            tempo_bpm=self.tempo_bpm,
            degraded=frame.degraded or item.classification.degraded,
        )


class EditPipeline:
    """Single-use orchestrator: extract, analyse, decide, assemble and compose one asset.

    Extraction, spectral analysis, classification and beat detection run as worker threads
    connected by bounded channels; joining, decisions and assembly run on the calling thread.
    """

    def __init__(
        self,
        config: ProcessingConfiguration | Mapping[str, Any] | None = None,
        analysis: AnalysisSettings | Mapping[str, Any] | None = None,
        *,
        model: ClassificationModel | None = None,
        quality_weights: dict[str, float] | None = None,
        on_state_change: Callable[[PipelineState], None] | None = None,
        on_decision: Callable[[Decision], None] | None = None,
    ) -> None:
        self.config = validate_configuration(config)
        self.analysis = validate_analysis_settings(analysis)
        self.context = PipelineContext(analysis=self.analysis, config=self.config)
        self.model = model
        self.quality_weights = quality_weights
        self.on_state_change = on_state_change
        self.on_decision = on_decision
        self._state = PipelineState.IDLE
        self._state_lock = threading.Lock()
        self._started = False

    @property
    def state(self) -> PipelineState:
        return self._state

    def cancel(self) -> None:
        """Request cooperative cancellation; safe to call from any thread."""

        if not self.context.cancelled:
            logger.info("Cancellation requested")
        self.context.cancel()

    def run(
        self,
        source: str | Path | PcmDecoder,
        quality_provider: QualityProvider | None = None,
        music_regions: Sequence[tuple[float, float]] | None = None,
    ) -> EditResult:
        """Process one asset and return its composition plan and statistics."""

        if self._started:
            raise RuntimeError("EditPipeline is single-use; create a new pipeline for each run.")
        self._started = True
        started_at = time.perf_counter()

        try:
            self._advance(PipelineState.EXTRACTING)
            decoder = self._open(source)
            extractor = StreamExtractor(
                decoder,
                window_size=self.analysis.window_size,
                hop_size=self.analysis.hop_size,
                cancel_event=self.context.cancel_event,
            )
            result = self._execute(extractor, quality_provider, music_regions, started_at)
        except CancellationError:
            self._finish(PipelineState.CANCELLED)
            raise
        except KeyboardInterrupt:
            self.cancel()
            self._finish(PipelineState.CANCELLED)
            raise CancellationError("Pipeline interrupted; no composition plan was produced.") from None
        except BaseException:
            self._finish(PipelineState.FAILED)
            raise

        self._finish(PipelineState.COMPLETED)
        logger.info(
            "Edit completed in %.2fs: %s segments kept, %.1f%% reduction",
            result.statistics.processing_time,
            result.statistics.segments_kept,
            result.statistics.reduction_percentage,
        )
        return result

    def _open(self, source: str | Path | PcmDecoder) -> PcmDecoder:
        if isinstance(source, PcmDecoder):
            decoder = source
        else:
            decoder = open_decoder(source, self.analysis.sample_rate)

        if decoder.sample_rate != self.analysis.sample_rate:
            decoder.close()
            raise InputError(
                f"Decoder delivers {decoder.sample_rate} Hz but analysis expects "
                f"{self.analysis.sample_rate} Hz."
            )
        return decoder

    def _execute(
        self,
        extractor: StreamExtractor,
        quality_provider: QualityProvider | None,
        music_regions: Sequence[tuple[float, float]] | None,
        started_at: float,
    ) -> EditResult:
        analysis = self.analysis
        context = self.context
        hop_seconds = analysis.hop_size / float(analysis.sample_rate)

        analyzer = SpectralAnalyzer(
            sample_rate=analysis.sample_rate,
            window_size=analysis.window_size,
            hop_size=analysis.hop_size,
            window_function=analysis.window_function,
        )
        classifier = ContentClassifier(
            self.model,
            sensitivity=self.config.speech_sensitivity,
            history_size=analysis.smoothing_history,
            smoothing_factor=analysis.smoothing_factor,
            soft_timeout_seconds=analysis.classification_timeout_seconds,
        )
        detector = BeatDetector(
            sample_rate=analysis.sample_rate,
            hop_size=analysis.hop_size,
            rhythm_mode=self.config.rhythm_mode,
            tempo_range=self.config.tempo_range,
        )

        buffers: Channel[AudioBuffer] = self._channel("buffers")
        classify_in: Channel[SpectralFrame] = self._channel("classify-in")
        beat_in: Channel[SpectralFrame] = self._channel("beat-in")
        classified: Channel[ClassifiedFrame] = self._channel("classified")
        beat_updates: Channel[BeatUpdate] = self._channel("beats")

        def extract() -> None:
            for buffer in extractor:
                buffers.send(buffer)

        def analyze() -> None:
            if analysis.analysis_workers > 1:
                with ThreadPoolExecutor(
                    max_workers=analysis.analysis_workers,
                    thread_name_prefix="derush-spectral",
                ) as pool:
                    frames = ordered_map(pool, analyzer.analyze, buffers, max_in_flight=analysis.channel_capacity)
                    for frame in frames:
                        classify_in.send(frame)
                        beat_in.send(frame)
            else:
                for buffer in buffers:
                    frame = analyzer.analyze(buffer)
                    classify_in.send(frame)
                    beat_in.send(frame)

        def classify() -> None:
            try:
                for frame in classify_in:
                    classified.send(ClassifiedFrame(frame=frame, classification=classifier.classify(frame)))
            finally:
                classifier.close()

        def detect_beats() -> None:
            for frame in beat_in:
                beats = detector.process(frame)
                beat_updates.send(BeatUpdate(frame.index, tuple(beats), detector.tempo_bpm, detector.beats_detected))
            if not context.cancelled:
                final = detector.flush()
                beat_updates.send(BeatUpdate(None, tuple(final), detector.tempo_bpm, detector.beats_detected))

        engine = DecisionEngine(self.config, self.quality_weights)
        resolver = SilenceRunResolver(self.config.minimum_silence_duration)
        assembler = SegmentAssembler(self.config)
        summary = AnalysisSummary()
        joiner = WindowJoiner(
            hop_seconds=hop_seconds,
            tolerance=max(effective_beat_tolerance(self.config), self.config.beat_alignment_tolerance),
            beat_latency=detector.latency_seconds,
            quality_provider=quality_provider,
        )

        def decide(windows: list[AnalyzedWindow]) -> None:
            for window in windows:
                if self._state is not PipelineState.DECIDING:
                    self._advance(PipelineState.DECIDING)
                summary.record(window)
                for decision in resolver.push(engine.decide(window)):
                    self._accept(decision, assembler)

        logger.info(
            "Pipeline started: %s Hz, window %s, hop %s, rhythm %s",
            analysis.sample_rate,
            analysis.window_size,
            analysis.hop_size,
            self.config.rhythm_mode,
        )

        stages = (
            ("extract", extract, (buffers,)),
            ("spectral", analyze, (classify_in, beat_in)),
            ("classify", classify, (classified,)),
            ("beats", detect_beats, (beat_updates,)),
        )
        try:
            with ThreadPoolExecutor(max_workers=len(stages), thread_name_prefix="derush-stage") as executor:
                for name, body, outputs in stages:
                    executor.submit(self._run_stage, name, body, outputs)
                self._advance(PipelineState.ANALYZING)

                try:
                    for item in classified:
                        try:
                            update = beat_updates.receive()
                        except ChannelClosed:
                            break
                        if update.index != item.frame.index:
                            raise RuntimeError(
                                f"Beat stream out of step: window {item.frame.index}, beat update {update.index}."
                            )
                        decide(joiner.push(item, update))

                    final_update = None
                    for update in beat_updates:
                        if update.index is None:
                            final_update = update
                    if not context.cancelled:
                        decide(joiner.finish(final_update))
                        for decision in resolver.flush():
                            self._accept(decision, assembler)
                except BaseException as exc:
                    context.fail(exc)
                    raise
        finally:
            extractor.close()

        if context.failure is not None:
            raise context.failure
        if context.cancelled:
            raise CancellationError("Pipeline cancelled; no composition plan was produced.")

        self._advance(PipelineState.ASSEMBLING)
        summary.beats_detected = joiner.beats_detected
        summary.tempo_bpm = joiner.tempo_bpm
        original_duration = extractor.duration
        segments = assembler.finish(original_duration)
        logger.info(
            "Assembled %s segments from %s windows (%s short pauses kept, %s short segments dropped)",
            len(segments),
            summary.windows_analyzed,
            resolver.short_pauses_kept,
            assembler.dropped_segments,
        )

        builder = CompositionBuilder(self.config)
        return builder.build(
            segments,
            original_duration,
            speech_regions=assembler.speech_regions,
            music_regions=music_regions,
            summary=summary,
            processing_time=time.perf_counter() - started_at,
        )

    def _accept(self, decision: Decision, assembler: SegmentAssembler) -> None:
        assembler.add(decision)
        if self.on_decision is not None:
            self.on_decision(decision)

    def _run_stage(self, name: str, body: Callable[[], None], outputs: Sequence[Channel[Any]]) -> None:
        logger.debug("Stage %s started", name)
        try:
            body()
        except CancellationError:
            logger.debug("Stage %s stopped by cancellation", name)
        except Exception as exc:
            logger.error("Stage %s failed: %s", name, exc)
            self.context.fail(exc)
        finally:
            for channel in outputs:
                channel.close()
            logger.debug("Stage %s finished", name)

    def _channel(self, name: str) -> Channel[Any]:
        return Channel(
            name,
            self.analysis.channel_capacity,
            self.context.cancel_event,
            stall_timeout=self.analysis.stall_timeout_seconds,
            max_stall_retries=self.analysis.max_stall_retries,
        )

    def _advance(self, target: PipelineState) -> None:
        with self._state_lock:
            current = self._state
            if current.terminal or _FORWARD_ORDER.index(target) <= _FORWARD_ORDER.index(current):
                return
            self._state = target
        logger.info("Pipeline state %s -> %s", current.value, target.value)
        if self.on_state_change is not None:
            self.on_state_change(target)

    def _finish(self, target: PipelineState) -> None:
        if target is PipelineState.COMPLETED:
            self._advance(target)
            return
        with self._state_lock:
            current = self._state
            if current.terminal:
                return
            self._state = target
        logger.info("Pipeline state %s -> %s", current.value, target.value)
        if self.on_state_change is not None:
            self.on_state_change(target)


def run_edit(
    source: str | Path | PcmDecoder,
    config: ProcessingConfiguration | Mapping[str, Any] | None = None,
    analysis: AnalysisSettings | Mapping[str, Any] | None = None,
    *,
    quality_provider: QualityProvider | None = None,
    music_regions: Sequence[tuple[float, float]] | None = None,
    model: ClassificationModel | None = None,
) -> EditResult:
    """One-shot helper around ``EditPipeline``."""

    pipeline = EditPipeline(config, analysis, model=model)
    return pipeline.run(source, quality_provider=quality_provider, music_regions=music_regions)
