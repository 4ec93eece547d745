from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass

import numpy as np

from derush.config import RhythmMode
from derush.models import BeatPoint, SpectralFrame, TransientType

logger = logging.getLogger(__name__)

BAND_ORDER: tuple[TransientType, ...] = ("kick", "snare", "hihat")

MIN_BEAT_INTERVAL = 0.2
MAX_BEAT_INTERVAL = 2.0
DEFAULT_TEMPO_RANGE = (60.0, 200.0)
MIN_BEATS_FOR_TEMPO = 4

_EPSILON = 1e-12


@dataclass(slots=True)
class _Candidate:
    flux: float
    timestamp: float
    mean_energy: float
    total_energy: float


@dataclass(slots=True)
class _BandState:
    history: deque[float]
    previous_energy: float | None = None
    previous_flux: float = 0.0
    candidate: _Candidate | None = None
    last_beat_time: float = -math.inf


def estimate_tempo(
    timestamps: Iterable[float],
    tempo_range: tuple[float, float] = DEFAULT_TEMPO_RANGE,
) -> float | None:
    """Estimate BPM from beat timestamps; None when implausible or outside ``tempo_range``."""

    ordered = sorted(timestamps)
    if len(ordered) < MIN_BEATS_FOR_TEMPO:
        return None

    intervals = np.diff(np.asarray(ordered, dtype=np.float64))
    valid = intervals[(intervals > MIN_BEAT_INTERVAL) & (intervals < MAX_BEAT_INTERVAL)]
    if len(valid) == 0:
        return None

    bpm = 60.0 / float(np.mean(valid))
    low, high = tempo_range
    if low <= bpm <= high:
        return bpm
    return None


class BeatDetector:
    """Detect band transients from consecutive spectral frames and track tempo.

    Per band, the positive energy difference between consecutive windows (spectral flux)
    is peak-picked with one window of look-ahead. A peak becomes a transient when it exceeds
    ``onset_ratio`` of the band's rolling mean energy and ``energy_floor_ratio`` of the
    window's total energy. Transients from different bands within ``coalesce_seconds`` are
    reported once, as the strongest of the group.
    """

    def __init__(
        self,
        *,
        sample_rate: int,
        hop_size: int,
        rhythm_mode: RhythmMode = "moderate",
        onset_ratio: float = 0.7,
        history_seconds: float = 1.0,
        refractory_seconds: float = 0.1,
        coalesce_seconds: float = 0.03,
        energy_floor_ratio: float = 1e-3,
        tempo_window: int = 10,
        tempo_range: tuple[float, float] = DEFAULT_TEMPO_RANGE,
    ) -> None:
        self.enabled = rhythm_mode != "disabled"
        self.tempo_range = tempo_range
        self.onset_ratio = onset_ratio
        self.refractory_seconds = refractory_seconds
        self.coalesce_seconds = coalesce_seconds
        self.energy_floor_ratio = energy_floor_ratio
        self.hop_seconds = hop_size / float(sample_rate)
        self.beats_detected = 0
        self.tempo_bpm: float | None = None

        history_frames = max(1, int(round(history_seconds / self.hop_seconds)))
        self._bands = {name: _BandState(history=deque(maxlen=history_frames)) for name in BAND_ORDER}
        self._recent_beats: deque[float] = deque(maxlen=max(tempo_window, MIN_BEATS_FOR_TEMPO))
        self._pending: list[BeatPoint] = []

    @property
    def latency_seconds(self) -> float:
        """Upper bound on how far behind the newest frame a reported beat can be."""

        return self.coalesce_seconds + 2.0 * self.hop_seconds

    def process(self, frame: SpectralFrame) -> list[BeatPoint]:
        """Feed the next frame in stream order; return beats that are now final."""

        if not self.enabled:
            return []

        for name in BAND_ORDER:
            beat = self._update_band(name, self._bands[name], frame)
            if beat is not None:
                self._pending.append(beat)

        horizon = frame.center_time - 1.5 * self.hop_seconds
        return self._release(horizon)

    def flush(self) -> list[BeatPoint]:
        """Finalise candidates still waiting for look-ahead at end of stream."""

        if not self.enabled:
            return []

        for name in BAND_ORDER:
            state = self._bands[name]
            if state.candidate is not None:
                beat = self._confirm(name, state, next_flux=0.0)
                if beat is not None:
                    self._pending.append(beat)
        return self._release(math.inf)

    def _update_band(self, name: TransientType, state: _BandState, frame: SpectralFrame) -> BeatPoint | None:
        energy = 0.0 if frame.degraded else frame.bands.get(name)
        flux = 0.0 if state.previous_energy is None else max(0.0, energy - state.previous_energy)

        beat = None
        if state.candidate is not None:
            beat = self._confirm(name, state, next_flux=flux)

        if flux > 0.0 and flux >= state.previous_flux:
            mean_energy = float(sum(state.history) / len(state.history)) if state.history else 0.0
            state.candidate = _Candidate(
                flux=flux,
                # The flux spans two window centres; the onset sits between them.
                timestamp=frame.center_time - self.hop_seconds / 2.0,
                mean_energy=mean_energy,
                total_energy=frame.bands.total,
            )
        else:
            state.candidate = None

        state.history.append(energy)
        state.previous_energy = energy
        state.previous_flux = flux
        return beat

    def _confirm(self, name: TransientType, state: _BandState, next_flux: float) -> BeatPoint | None:
        candidate = state.candidate
        state.candidate = None
        if candidate is None or candidate.flux <= next_flux:
            return None

        threshold = self.onset_ratio * candidate.mean_energy
        strength = candidate.flux / (candidate.total_energy + _EPSILON)
        if candidate.flux < threshold or strength < self.energy_floor_ratio:
            return None
        if candidate.timestamp - state.last_beat_time < self.refractory_seconds:
            return None

        state.last_beat_time = candidate.timestamp
        return BeatPoint(
            timestamp=max(0.0, candidate.timestamp),
            strength=min(1.0, strength),
            transient_type=name,
            confidence=min(1.0, candidate.flux / (candidate.flux + threshold + _EPSILON)),
        )

    def _release(self, horizon: float) -> list[BeatPoint]:
        pending = sorted(self._pending, key=lambda beat: (beat.timestamp, BAND_ORDER.index(beat.transient_type)))
        released: list[BeatPoint] = []

        while pending and pending[0].timestamp + self.coalesce_seconds <= horizon:
            anchor = pending[0].timestamp
            group = [beat for beat in pending if beat.timestamp - anchor < self.coalesce_seconds]
            pending = pending[len(group) :]
            chosen = max(group, key=lambda beat: (beat.strength, -beat.timestamp))
            released.append(chosen)
            self._record(chosen)

        self._pending = pending
        return released

    def _record(self, beat: BeatPoint) -> None:
        self.beats_detected += 1
        self._recent_beats.append(beat.timestamp)
        tempo = estimate_tempo(self._recent_beats, self.tempo_range)
        if tempo is not None:
            if self.tempo_bpm is None or abs(tempo - self.tempo_bpm) >= 1.0:
                logger.debug("Tempo estimate %.1f BPM after %s beats", tempo, self.beats_detected)
            self.tempo_bpm = tempo
