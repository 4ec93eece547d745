from __future__ import annotations

import logging
from collections.abc import Callable

import numpy as np

from derush.config import WindowFunction
from derush.errors import TransientAnalysisError
from derush.models import AudioBuffer, BandEnergies, SpectralFeatures, SpectralFrame

logger = logging.getLogger(__name__)

EPSILON = 1e-10
DB_FLOOR = 20.0 * np.log10(EPSILON)

TRANSIENT_BANDS: dict[str, tuple[float, float]] = {
    "kick": (20.0, 100.0),
    "snare": (150.0, 300.0),
    "hihat": (8000.0, 16000.0),
}

_WINDOW_BUILDERS: dict[str, Callable[[int], np.ndarray]] = {
    "hann": np.hanning,
    "hamming": np.hamming,
    "blackman": np.blackman,
    "rectangular": np.ones,
}


def rms_to_db(rms: float) -> float:
    """Convert a linear RMS amplitude to dBFS, floored instead of -inf."""

    return float(20.0 * np.log10(max(rms, EPSILON)))


class SpectralAnalyzer:
    """Pure per-window spectral description; the same buffer always yields the same frame."""

    def __init__(
        self,
        *,
        sample_rate: int,
        window_size: int,
        hop_size: int,
        window_function: WindowFunction = "hann",
    ) -> None:
        if window_function not in _WINDOW_BUILDERS:
            raise ValueError(f"Unsupported window function '{window_function}'.")

        self.sample_rate = sample_rate
        self.window_size = window_size
        self.hop_size = hop_size
        self._taper = _WINDOW_BUILDERS[window_function](window_size).astype(np.float64)
        self._frequencies = np.fft.rfftfreq(window_size, d=1.0 / sample_rate)
        self._band_masks = {
            name: (self._frequencies >= low) & (self._frequencies <= high)
            for name, (low, high) in TRANSIENT_BANDS.items()
        }

    def analyze(self, buffer: AudioBuffer) -> SpectralFrame:
        """Describe one buffer; numeric failures yield a degraded, silence-equivalent frame."""

        center_time = buffer.center_time
        try:
            return self._analyze(buffer, center_time)
        except (TransientAnalysisError, FloatingPointError) as exc:
            logger.warning("Window %s at %.3fs degraded: %s", buffer.index, center_time, exc)
            return _degraded_frame(buffer.index, center_time)

    def _analyze(self, buffer: AudioBuffer, center_time: float) -> SpectralFrame:
        samples = _fit_length(buffer.samples, self.window_size)
        if not np.all(np.isfinite(samples)):
            raise TransientAnalysisError("buffer contains non-finite samples")

        with np.errstate(divide="raise", invalid="raise", over="raise"):
            rms = float(np.sqrt(np.mean(np.square(samples))))
            magnitude = np.abs(np.fft.rfft(samples * self._taper))
            power = np.square(magnitude)

            magnitude_sum = float(np.sum(magnitude))
            if magnitude_sum > EPSILON:
                centroid = float(np.sum(self._frequencies * magnitude) / magnitude_sum)
                spread = float(
                    np.sqrt(np.sum(np.square(self._frequencies - centroid) * magnitude) / magnitude_sum)
                )
                peak_frequency = float(self._frequencies[1 + int(np.argmax(magnitude[1:]))])
            else:
                centroid = 0.0
                spread = 0.0
                peak_frequency = 0.0

            total_power = float(np.sum(power))
            geometric_mean = float(np.exp(np.mean(np.log(power + EPSILON))))
            flatness = geometric_mean / (float(np.mean(power)) + EPSILON)

        features = SpectralFeatures(
            peak_frequency=peak_frequency,
            spectral_centroid=centroid,
            spectral_spread=spread,
            spectral_energy=total_power / self.window_size,
            rms_db=rms_to_db(rms),
            spectral_flatness=min(1.0, flatness),
        )
        bands = BandEnergies(
            kick=float(np.sum(power[self._band_masks["kick"]])),
            snare=float(np.sum(power[self._band_masks["snare"]])),
            hihat=float(np.sum(power[self._band_masks["hihat"]])),
            total=total_power,
        )
        return SpectralFrame(
            index=buffer.index,
            center_time=center_time,
            features=features,
            bands=bands,
            boundary_zero_crossing=self._boundary_zero_crossing(samples, buffer.timestamp),
        )

    def _boundary_zero_crossing(self, samples: np.ndarray, timestamp: float) -> float | None:
        # The decision boundary of a window sits half a hop before its centre.
        boundary = self.window_size // 2 - self.hop_size // 2
        radius = max(self.hop_size // 2, 1)
        low = max(boundary - radius, 0)
        high = min(boundary + radius, len(samples) - 1)
        if high <= low:
            return None

        region = samples[low : high + 1]
        signs = np.signbit(region)
        crossings = np.nonzero(signs[1:] != signs[:-1])[0] + low + 1
        if len(crossings) == 0:
            return None

        nearest = int(crossings[np.argmin(np.abs(crossings - boundary))])
        return timestamp + nearest / float(self.sample_rate)


def _fit_length(samples: np.ndarray, length: int) -> np.ndarray:
    data = np.asarray(samples, dtype=np.float64)
    if len(data) == length:
        return data
    if len(data) > length:
        return data[:length]
    return np.pad(data, (0, length - len(data)))


def _degraded_frame(index: int, center_time: float) -> SpectralFrame:
    return SpectralFrame(
        index=index,
        center_time=center_time,
        features=SpectralFeatures(
            peak_frequency=0.0,
            spectral_centroid=0.0,
            spectral_spread=0.0,
            spectral_energy=0.0,
            rms_db=float(DB_FLOOR),
            spectral_flatness=0.0,
        ),
        bands=BandEnergies(kick=0.0, snare=0.0, hihat=0.0, total=0.0),
        boundary_zero_crossing=None,
        degraded=True,
    )
