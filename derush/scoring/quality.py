from __future__ import annotations

from dataclasses import dataclass

from derush.config import ProcessingConfiguration
from derush.models import AnalyzedWindow

DEFAULT_QUALITY_WEIGHTS = {
    "level": 0.35,
    "presence": 0.2,
    "tonal_stability": 0.15,
    "confidence": 0.2,
    "rhythm": 0.1,
}

OPTIMAL_LEVEL_DB = (-40.0, -12.0)
LEVEL_FLOOR_DB = -60.0
DEFAULT_AUDIO_ALPHA = 0.65


@dataclass(slots=True)
class QualityScoreDetails:
    """Explainable output for per-window quality scoring."""

    score: float
    audio_score: float
    external_quality: float | None
    reason_tags: list[str]
    weighted_contributions: dict[str, float]
    feature_values: dict[str, float]
    weights: dict[str, float]


def fuse_quality(audio: float, external: float, alpha: float = DEFAULT_AUDIO_ALPHA) -> float:
    """Blend the audio score with an externally supplied quality score."""

    alpha = _clamp(alpha)
    return _clamp((alpha * _clamp(audio)) + ((1 - alpha) * _clamp(external)))


def score_window(
    window: AnalyzedWindow,
    config: ProcessingConfiguration,
    weights: dict[str, float] | None = None,
    *,
    audio_alpha: float = DEFAULT_AUDIO_ALPHA,
    reason_threshold: float = 0.55,
    max_reason_tags: int = 3,
) -> QualityScoreDetails:
    """Score a window from its audio signals, blended with external quality when present."""

    resolved_weights = _resolve_weights(weights)
    feature_values = window_signals(window, config)

    weighted_contributions = {
        key: feature_values.get(key, 0.0) * weight
        for key, weight in resolved_weights.items()
    }
    audio_score = _clamp(sum(weighted_contributions.values()))

    external = window.external_quality
    if external is None:
        score = audio_score
    else:
        score = fuse_quality(audio_score, external, alpha=audio_alpha)

    return QualityScoreDetails(
        score=score,
        audio_score=audio_score,
        external_quality=_clamp(external) if external is not None else None,
        reason_tags=_generate_reason_tags(
            feature_values=feature_values,
            weighted_contributions=weighted_contributions,
            reason_threshold=reason_threshold,
            max_reason_tags=max_reason_tags,
        ),
        weighted_contributions=weighted_contributions,
        feature_values=feature_values,
        weights=resolved_weights,
    )


def window_signals(window: AnalyzedWindow, config: ProcessingConfiguration) -> dict[str, float]:
    """Normalise the window's audio evidence to 0..1 signals."""

    rms_db = window.features.rms_db
    rhythm = 0.0
    if window.nearest_beat is not None:
        distance = abs(window.nearest_beat.timestamp - window.start)
        rhythm = _clamp(1.0 - distance / config.beat_alignment_tolerance)

    return {
        "level": level_factor(rms_db),
        "presence": _clamp((rms_db - config.effective_silence_threshold_db) / 20.0),
        "tonal_stability": _clamp(1.0 - window.features.spectral_flatness),
        "confidence": _clamp(window.classification.confidence),
        "rhythm": rhythm,
    }


def level_factor(rms_db: float) -> float:
    """1.0 inside the comfortable loudness range, falling off linearly outside it."""

    low, high = OPTIMAL_LEVEL_DB
    if low <= rms_db <= high:
        return 1.0
    if rms_db < low:
        return _clamp((rms_db - LEVEL_FLOOR_DB) / (low - LEVEL_FLOOR_DB))
    return _clamp(1.0 - (rms_db - high) / abs(high))


def _resolve_weights(weights: dict[str, float] | None) -> dict[str, float]:
    active_weights = weights or DEFAULT_QUALITY_WEIGHTS

    non_negative = {
        signal_name: max(0.0, raw_weight)
        for signal_name, raw_weight in active_weights.items()
    }
    total_weight = sum(non_negative.values())
    if total_weight == 0:
        return {}

    return {
        signal_name: weight / total_weight
        for signal_name, weight in non_negative.items()
    }


def _generate_reason_tags(
    *,
    feature_values: dict[str, float],
    weighted_contributions: dict[str, float],
    reason_threshold: float,
    max_reason_tags: int,
) -> list[str]:
    if max_reason_tags <= 0:
        return []

    tagged = [
        signal_name
        for signal_name, value in feature_values.items()
        if value >= _clamp(reason_threshold) and signal_name in weighted_contributions
    ]
    tagged.sort(key=lambda key: (-weighted_contributions.get(key, 0.0), key))
    return [f"signal:{signal_name}" for signal_name in tagged[:max_reason_tags]]


def _clamp(value: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    return max(minimum, min(maximum, value))
