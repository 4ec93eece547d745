from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

from derush.config import SENSITIVITY_THRESHOLDS, SpeechSensitivity
from derush.models import Classification, SpectralFrame

logger = logging.getLogger(__name__)

Probabilities = tuple[float, float, float]

DEGRADED_PROBABILITIES: Probabilities = (0.2, 0.2, 0.6)

# (lower dB bound, (speech, music, noise)) checked from loudest to quietest.
_LOUDNESS_PRIORS: tuple[tuple[float, Probabilities], ...] = (
    (-6.0, (0.4, 0.5, 0.3)),
    (-20.0, (0.7, 0.6, 0.1)),
    (-40.0, (0.8, 0.3, 0.2)),
    (-60.0, (0.2, 0.1, 0.8)),
)
_QUIET_PRIOR: Probabilities = (0.1, 0.1, 0.9)

SPEECH_CENTROID_RANGE = (250.0, 3500.0)
TONAL_FLATNESS = 0.1
NOISY_FLATNESS = 0.5


class ClassificationModel(ABC):
    """Raw (speech, music, noise) scorer for one spectral frame; need not be normalised."""

    name = "abstract"

    @abstractmethod
    def predict(self, frame: SpectralFrame) -> Probabilities:
        raise NotImplementedError


class SpectralHeuristicModel(ClassificationModel):
    """Loudness prior refined by tonality, noisiness and a speech-band centroid."""

    name = "spectral-heuristic"

    def predict(self, frame: SpectralFrame) -> Probabilities:
        features = frame.features
        speech, music, noise = _loudness_prior(features.rms_db)

        if features.rms_db >= -40.0:
            if features.spectral_flatness < TONAL_FLATNESS:
                music += 0.4
                speech -= 0.2
            elif features.spectral_flatness > NOISY_FLATNESS:
                noise += 0.4
            low, high = SPEECH_CENTROID_RANGE
            if low <= features.spectral_centroid <= high:
                speech += 0.1

        return (max(speech, 0.0), max(music, 0.0), max(noise, 0.0))


class ContentClassifier:
    """Turn raw model scores into smoothed, sensitivity-biased classifications.

    Frames must be fed in stream order: the last ``history_size`` results are blended into
    each new one. A model call that raises or exceeds ``soft_timeout_seconds`` produces a
    degraded noise-leaning classification instead of failing the run.
    """

    def __init__(
        self,
        model: ClassificationModel | None = None,
        *,
        sensitivity: SpeechSensitivity = "medium",
        history_size: int = 5,
        smoothing_factor: float = 0.3,
        soft_timeout_seconds: float = 2.0,
    ) -> None:
        self.model = model or SpectralHeuristicModel()
        self.sensitivity = sensitivity
        self.threshold = SENSITIVITY_THRESHOLDS[sensitivity]
        self.smoothing_factor = smoothing_factor
        self.soft_timeout_seconds = soft_timeout_seconds
        self.degraded_count = 0

        self._history: deque[Probabilities] = deque(maxlen=max(history_size, 1))
        self._executor: ThreadPoolExecutor | None = None

    def classify(self, frame: SpectralFrame) -> Classification:
        """Classify the next frame in stream order."""

        if frame.degraded:
            return self._degraded(frame, "spectral analysis degraded")

        try:
            raw = self._predict_with_timeout(frame)
        except FutureTimeoutError:
            return self._degraded(frame, f"model exceeded {self.soft_timeout_seconds:.2f}s soft timeout")
        except Exception as exc:
            return self._degraded(frame, f"{type(exc).__name__}: {exc}")

        biased = _normalize(apply_sensitivity(raw, self.sensitivity))
        smoothed = self._smooth(biased)
        self._history.append(smoothed)
        speech, music, noise = smoothed
        return Classification(speech=speech, music=music, noise=noise, timestamp=frame.center_time)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _predict_with_timeout(self, frame: SpectralFrame) -> Probabilities:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="derush-classify")

        future = self._executor.submit(self.model.predict, frame)
        try:
            return future.result(timeout=self.soft_timeout_seconds)
        except FutureTimeoutError:
            # Leave the stuck call behind so later windows get a fresh worker.
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            raise

    def _smooth(self, current: Probabilities) -> Probabilities:
        if not self._history:
            return current

        count = float(len(self._history))
        average = tuple(sum(entry[idx] for entry in self._history) / count for idx in range(3))
        factor = self.smoothing_factor
        blended = tuple((1.0 - factor) * current[idx] + factor * average[idx] for idx in range(3))
        return _normalize(blended)  # type: ignore[arg-type]

    def _degraded(self, frame: SpectralFrame, reason: str) -> Classification:
        self.degraded_count += 1
        logger.warning("Classification degraded for window %s at %.3fs: %s", frame.index, frame.center_time, reason)
        speech, music, noise = DEGRADED_PROBABILITIES
        return Classification(
            speech=speech,
            music=music,
            noise=noise,
            timestamp=frame.center_time,
            degraded=True,
        )


def apply_sensitivity(raw: Probabilities, sensitivity: SpeechSensitivity) -> Probabilities:
    """Bias raw speech/noise scores for the configured sensitivity."""

    speech, music, noise = raw
    threshold = SENSITIVITY_THRESHOLDS[sensitivity]

    if sensitivity == "high":
        if speech < threshold:
            speech *= 0.5
            noise += speech * 0.5
    elif sensitivity == "low":
        speech = min(1.0, speech * 1.2)
        noise = max(0.0, noise - 0.1)

    return (speech, music, noise)


def _loudness_prior(rms_db: float) -> Probabilities:
    for lower_bound, prior in _LOUDNESS_PRIORS:
        if rms_db >= lower_bound:
            return prior
    return _QUIET_PRIOR


def _normalize(values: Probabilities) -> Probabilities:
    speech, music, noise = (max(0.0, float(value)) for value in values)
    total = speech + music + noise
    if total <= 0.0:
        return DEGRADED_PROBABILITIES
    return (speech / total, music / total, noise / total)
