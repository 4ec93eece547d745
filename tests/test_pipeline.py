from __future__ import annotations

import tracemalloc

import numpy as np
import pytest

from derush.errors import CancellationError, InputError
from derush.features.classifier import ClassificationModel
from derush.ingest.decoders import ArrayDecoder, PcmDecoder
from derush.models import Decision, SpectralFrame
from derush.pipeline import EditPipeline, PipelineState, run_edit

SAMPLE_RATE = 44100


class _LevelModel(ClassificationModel):
    """Loud windows are speech, quiet ones noise."""

    name = "level"

    def predict(self, frame: SpectralFrame) -> tuple[float, float, float]:
        if frame.features.rms_db > -40.0:
            return (0.9, 0.05, 0.05)
        return (0.05, 0.05, 0.9)


class _MusicModel(ClassificationModel):
    name = "music"

    def predict(self, frame: SpectralFrame) -> tuple[float, float, float]:
        return (0.05, 0.9, 0.05)


class _FlakyModel(_LevelModel):
    """Speech/noise by level, but the backend fails on one window."""

    name = "flaky"

    def predict(self, frame: SpectralFrame) -> tuple[float, float, float]:
        if frame.index == 50:
            raise RuntimeError("inference backend hiccup")
        return super().predict(frame)


class _DipQuality:
    """Poor external quality for windows centred in 3.05-5.05s."""

    def quality_for_range(self, start: float, end: float) -> float:
        midpoint = (start + end) / 2.0
        return 0.3 if 3.05 <= midpoint < 5.05 else 0.9


class _SineDecoder(PcmDecoder):
    def __init__(self, total_frames: int, sample_rate: int) -> None:
        self.sample_rate = sample_rate
        self.total_frames = total_frames
        self.position = 0

    def read(self, frame_count: int) -> np.ndarray:
        count = max(0, min(frame_count, self.total_frames - self.position))
        indices = np.arange(self.position, self.position + count, dtype=np.float64)
        self.position += count
        return (0.1 * np.sin(2.0 * np.pi * 220.0 * indices / self.sample_rate)).astype(np.float32)

    def close(self) -> None:
        pass


class _BrokenDecoder(_SineDecoder):
    def read(self, frame_count: int) -> np.ndarray:
        if self.position > 0:
            raise OSError("device read failed")
        return super().read(frame_count)


def _time_axis(seconds: float) -> np.ndarray:
    return np.arange(int(seconds * SAMPLE_RATE)) / SAMPLE_RATE


def _speech_between(start: float, end: float, seconds: float = 10.0, frequency: float = 440.0) -> np.ndarray:
    t = _time_axis(seconds)
    signal = np.random.default_rng(11).normal(0.0, 0.001, len(t))
    mask = (t >= start) & (t < end)
    signal[mask] = 0.1 * np.sin(2.0 * np.pi * frequency * t[mask])
    return signal


def _speech_with_dip(dip_start: float, dip_end: float, seconds: float = 10.0) -> np.ndarray:
    t = _time_axis(seconds)
    signal = 0.1 * np.sin(2.0 * np.pi * 440.0 * t)
    mask = (t >= dip_start) & (t < dip_end)
    signal[mask] = np.random.default_rng(5).normal(0.0, 0.001, int(mask.sum()))
    return signal


def _music_with_kicks(seconds: float = 10.0) -> np.ndarray:
    t = _time_axis(seconds)
    signal = 0.05 * np.sin(2.0 * np.pi * 440.0 * t)
    since_kick = np.mod(t, 0.5)
    signal += 0.5 * np.sin(2.0 * np.pi * 60.0 * since_kick) * np.exp(-since_kick / 0.03)
    return signal


def _pipeline(**kwargs: object) -> EditPipeline:
    config = kwargs.pop("config", {"rhythm_mode": "disabled"})
    analysis = kwargs.pop("analysis", None)
    kwargs.setdefault("model", _LevelModel())
    return EditPipeline(config, analysis, **kwargs)  # type: ignore[arg-type]


def test_silence_around_speech_is_removed_with_padding() -> None:
    decisions: list[Decision] = []
    states: list[PipelineState] = []
    pipeline = _pipeline(on_decision=decisions.append, on_state_change=states.append)

    result = pipeline.run(ArrayDecoder(_speech_between(2.0, 8.0), SAMPLE_RATE))

    segments = result.composition_plan.segments
    assert len(segments) == 1
    assert 1.75 <= segments[0].start <= 1.9
    assert 8.15 <= segments[0].end <= 8.3
    assert segments[0].contains_speech is True

    stats = result.statistics
    assert stats.original_duration == pytest.approx(10.0)
    assert stats.segments_removed == 2
    assert 30.0 <= stats.reduction_percentage <= 45.0
    assert stats.windows_analyzed == 862
    assert stats.speech_windows > 0 and stats.noise_windows > 0

    assert [decision.index for decision in decisions] == list(range(862))
    assert states == [
        PipelineState.EXTRACTING,
        PipelineState.ANALYZING,
        PipelineState.DECIDING,
        PipelineState.ASSEMBLING,
        PipelineState.COMPLETED,
    ]
    assert pipeline.state is PipelineState.COMPLETED


def test_short_pauses_inside_speech_are_kept() -> None:
    result = _pipeline().run(ArrayDecoder(_speech_with_dip(4.0, 4.3), SAMPLE_RATE))

    segments = result.composition_plan.segments
    assert len(segments) == 1
    assert segments[0].start < 0.02
    assert segments[0].end > 9.99


def test_quality_gate_cuts_music_on_beats() -> None:
    config = {"rhythm_mode": "moderate", "quality_gate_threshold": 0.6, "enable_voice_ducking": False}

    result = _pipeline(config=config, model=_MusicModel()).run(
        ArrayDecoder(_music_with_kicks(), SAMPLE_RATE),
        quality_provider=_DipQuality(),
    )

    segments = result.composition_plan.segments
    assert len(segments) == 2
    assert segments[0].end == pytest.approx(3.0, abs=0.035)
    assert segments[1].start == pytest.approx(5.0, abs=0.035)
    assert all(segment.content_type == "music" for segment in segments)
    assert result.statistics.beats_detected > 0


def test_cuts_fall_back_to_the_window_grid_without_rhythm() -> None:
    config = {"rhythm_mode": "disabled", "quality_gate_threshold": 0.6, "enable_voice_ducking": False}

    result = _pipeline(config=config, model=_MusicModel()).run(
        ArrayDecoder(_music_with_kicks(), SAMPLE_RATE),
        quality_provider=_DipQuality(),
    )

    segments = result.composition_plan.segments
    assert result.statistics.beats_detected == 0
    assert segments[0].end > 3.035


def test_speech_survives_a_failing_quality_gate() -> None:
    decisions: list[Decision] = []
    config = {"rhythm_mode": "disabled", "quality_gate_threshold": 0.6, "quality_threshold": 0.95}

    result = _pipeline(config=config, on_decision=decisions.append).run(
        ArrayDecoder(_speech_between(2.0, 8.0), SAMPLE_RATE),
        quality_provider=_DipQuality(),
    )

    segments = result.composition_plan.segments
    assert len(segments) == 1
    assert segments[0].start <= 2.0
    assert segments[0].end >= 8.0
    gated = [decision for decision in decisions if 3.05 <= (decision.start + decision.end) / 2.0 < 5.05]
    assert gated and all(decision.reason == "speech_preserved" for decision in gated)


def test_final_duration_accounts_for_crossfade_overlap() -> None:
    config = {"rhythm_mode": "moderate", "quality_gate_threshold": 0.6, "crossfade_duration": 0.05}

    result = run_edit(
        ArrayDecoder(_music_with_kicks(), SAMPLE_RATE),
        config,
        quality_provider=_DipQuality(),
        model=_MusicModel(),
    )

    plan = result.composition_plan
    kept = sum(segment.duration for segment in plan.segments)
    assert len(plan.segments) == 2
    assert result.statistics.crossfade_overlap == pytest.approx(0.05)
    assert plan.final_duration + result.statistics.crossfade_overlap == pytest.approx(kept, abs=1e-9)


def test_default_heuristic_model_keeps_tonal_content_and_drops_silence() -> None:
    result = run_edit(
        ArrayDecoder(_speech_between(2.0, 8.0, frequency=5000.0), SAMPLE_RATE),
        {"rhythm_mode": "disabled"},
    )

    segments = result.composition_plan.segments
    assert len(segments) == 1
    assert 1.9 <= segments[0].start <= 2.1
    assert 7.9 <= segments[0].end <= 8.1
    assert segments[0].content_type == "music"
    assert result.statistics.music_windows > 0
    assert result.statistics.noise_windows > 0


def test_runs_are_deterministic_across_worker_counts() -> None:
    signal = _speech_between(2.0, 8.0)

    first = run_edit(ArrayDecoder(signal, SAMPLE_RATE), {"rhythm_mode": "disabled"}, model=_LevelModel())
    second = run_edit(ArrayDecoder(signal, SAMPLE_RATE), {"rhythm_mode": "disabled"}, model=_LevelModel())
    parallel = run_edit(
        ArrayDecoder(signal, SAMPLE_RATE),
        {"rhythm_mode": "disabled"},
        {"analysis_workers": 2},
        model=_LevelModel(),
    )

    assert first == second
    assert first == parallel


def test_cancellation_produces_no_plan() -> None:
    pipelines: list[EditPipeline] = []

    def _cancel_when_analyzing(state: PipelineState) -> None:
        if state is PipelineState.ANALYZING:
            pipelines[0].cancel()

    pipeline = _pipeline(on_state_change=_cancel_when_analyzing)
    pipelines.append(pipeline)

    with pytest.raises(CancellationError):
        pipeline.run(ArrayDecoder(_speech_between(2.0, 8.0), SAMPLE_RATE))

    assert pipeline.state is PipelineState.CANCELLED


def test_single_window_model_failure_degrades_and_continues(caplog) -> None:
    pipeline = _pipeline(model=_FlakyModel())

    with caplog.at_level("WARNING"):
        result = pipeline.run(ArrayDecoder(_speech_between(0.5, 1.5, seconds=2.0), SAMPLE_RATE))

    assert pipeline.state is PipelineState.COMPLETED
    assert result.statistics.degraded_windows == 1
    assert result.statistics.windows_analyzed == 173
    assert "inference backend hiccup" in caplog.text


def test_fatal_stage_failures_fail_the_run() -> None:
    pipeline = _pipeline()

    with pytest.raises(OSError, match="device read failed"):
        pipeline.run(_BrokenDecoder(SAMPLE_RATE * 5, SAMPLE_RATE))

    assert pipeline.state is PipelineState.FAILED


def test_missing_asset_is_an_input_error(tmp_path) -> None:
    pipeline = _pipeline()

    with pytest.raises(InputError, match="Asset not found"):
        pipeline.run(tmp_path / "missing.wav")

    assert pipeline.state is PipelineState.FAILED


def test_decoder_sample_rate_must_match_analysis() -> None:
    with pytest.raises(InputError, match="8000 Hz"):
        _pipeline().run(ArrayDecoder(np.zeros(8000), 8000))


def test_pipeline_is_single_use() -> None:
    pipeline = _pipeline()
    pipeline.run(ArrayDecoder(_speech_between(0.2, 0.8, seconds=1.0), SAMPLE_RATE))

    with pytest.raises(RuntimeError, match="single-use"):
        pipeline.run(ArrayDecoder(np.zeros(100), SAMPLE_RATE))


def test_pipeline_memory_is_bounded_by_buffering_not_duration() -> None:
    sample_rate = 8000
    total_frames = sample_rate * 120
    pipeline = _pipeline(analysis={"sample_rate": sample_rate, "window_size": 512, "hop_size": 256})

    tracemalloc.start()
    try:
        result = pipeline.run(_SineDecoder(total_frames, sample_rate))
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert result.statistics.windows_analyzed == total_frames // 256
    # The decoded signal alone would take ~3.8 MB.
    assert peak < 2 * 1024 * 1024
