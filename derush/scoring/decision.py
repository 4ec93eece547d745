from __future__ import annotations

import logging
from dataclasses import replace

from derush.config import SENSITIVITY_THRESHOLDS, ProcessingConfiguration
from derush.models import AnalyzedWindow, Decision, DecisionReason
from derush.scoring.quality import score_window

logger = logging.getLogger(__name__)

_DURATION_EPSILON = 1e-9


def effective_beat_tolerance(config: ProcessingConfiguration) -> float:
    """Snap radius around a cut for the configured rhythm mode (0 when disabled)."""

    if config.rhythm_mode == "disabled":
        return 0.0
    if config.rhythm_mode == "aggressive":
        return 2.0 * config.beat_alignment_tolerance
    return config.beat_alignment_tolerance


class DecisionEngine:
    """Keep/reject rules for a single window, in priority order.

    1. confident speech is always kept;
    2. noise below the silence threshold, shifted by the silence detection sensitivity,
       is a silence candidate (the run length is enforced by ``SilenceRunResolver``);
    3. music is kept unless an external quality score falls below the quality gate;
    4. anything else is kept when its quality score reaches ``quality_threshold``.
    """

    def __init__(self, config: ProcessingConfiguration, weights: dict[str, float] | None = None) -> None:
        self.config = config
        self.weights = weights
        self.speech_threshold = SENSITIVITY_THRESHOLDS[config.speech_sensitivity]
        self.beat_tolerance = effective_beat_tolerance(config)
        self.silence_threshold_db = config.effective_silence_threshold_db

    def decide(self, window: AnalyzedWindow) -> Decision:
        classification = window.classification
        dominant = classification.dominant_type
        details = score_window(window, self.config, self.weights)

        def verdict(keep: bool, reason: DecisionReason) -> Decision:
            return Decision(
                index=window.index,
                start=window.start,
                end=window.end,
                keep=keep,
                quality_score=details.score,
                reason=reason,
                content_type=dominant,
                cut_time=self.suggest_cut(window),
                quality_tags=tuple(details.reason_tags),
            )

        if (
            dominant == "speech"
            and not classification.degraded
            and classification.confidence >= self.speech_threshold
        ):
            return verdict(True, "speech_preserved")

        if dominant == "noise" and window.features.rms_db < self.silence_threshold_db:
            return verdict(False, "silence_removed")

        if dominant == "music" and not classification.degraded:
            gate = self.config.quality_gate_threshold
            if gate is not None and window.external_quality is not None and window.external_quality < gate:
                return verdict(False, "quality_gate_rejected")
            return verdict(True, "music_preserved")

        if details.score >= self.config.quality_threshold:
            return verdict(True, "quality_kept")
        return verdict(False, "quality_rejected")

    def suggest_cut(self, window: AnalyzedWindow) -> float:
        """Click-free cut time for a boundary at the start of this window."""

        beat = window.nearest_beat
        if (
            self.beat_tolerance > 0.0
            and beat is not None
            and abs(beat.timestamp - window.start) <= self.beat_tolerance
        ):
            return beat.timestamp
        if window.zero_crossing is not None:
            return window.zero_crossing
        return window.start


class SilenceRunResolver:
    """Confirm silence rejections only once the run reaches the minimum silence duration.

    Decisions come out in input order. At most ``minimum_silence_duration`` worth of
    candidates is held back; a run that ends shorter is released as kept short pauses.
    """

    def __init__(self, minimum_silence_duration: float) -> None:
        self.minimum_silence_duration = minimum_silence_duration
        self.short_pauses_kept = 0
        self._pending: list[Decision] = []
        self._confirmed = False

    def push(self, decision: Decision) -> list[Decision]:
        if decision.reason == "silence_removed":
            if self._confirmed:
                return [decision]

            self._pending.append(decision)
            run_duration = self._pending[-1].end - self._pending[0].start
            if run_duration + _DURATION_EPSILON >= self.minimum_silence_duration:
                self._confirmed = True
                released, self._pending = self._pending, []
                return released
            return []

        self._confirmed = False
        released = self._release_short_run()
        released.append(decision)
        return released

    def flush(self) -> list[Decision]:
        self._confirmed = False
        return self._release_short_run()

    def _release_short_run(self) -> list[Decision]:
        if not self._pending:
            return []

        logger.debug(
            "Keeping short pause %.3f-%.3fs (%s windows)",
            self._pending[0].start,
            self._pending[-1].end,
            len(self._pending),
        )
        self.short_pauses_kept += 1
        released = [replace(decision, keep=True, reason="short_pause_kept") for decision in self._pending]
        self._pending = []
        return released
