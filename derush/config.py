from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from derush.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "DERUSH_"

SpeechSensitivity = Literal["low", "medium", "high"]
RhythmMode = Literal["disabled", "moderate", "aggressive"]
SilenceDetectionSensitivity = Literal["low", "medium", "high"]
SpeechPreservationMode = Literal["conservative", "balanced", "aggressive"]
WindowFunction = Literal["hann", "hamming", "blackman", "rectangular"]

SENSITIVITY_THRESHOLDS: dict[str, float] = {
    "low": 0.3,
    "medium": 0.5,
    "high": 0.7,
}

# Low sensitivity lowers the silence threshold and keeps more quiet material.
SILENCE_THRESHOLD_ADJUSTMENTS_DB: dict[str, float] = {
    "low": -5.0,
    "medium": 0.0,
    "high": 5.0,
}

# Scale applied to speech padding.
PRESERVATION_FACTORS: dict[str, float] = {
    "conservative": 1.5,
    "balanced": 1.2,
    "aggressive": 1.0,
}

ModelT = TypeVar("ModelT", bound=BaseModel)


class ProcessingConfiguration(BaseModel):
    """Caller-facing edit options; immutable once validated."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    silence_threshold_db: float = Field(-50.0, ge=-60.0, le=-10.0)
    minimum_silence_duration: float = Field(0.5, ge=0.1, le=2.0)
    silence_detection_sensitivity: SilenceDetectionSensitivity = "medium"
    speech_sensitivity: SpeechSensitivity = "medium"
    speech_preservation_mode: SpeechPreservationMode = "aggressive"
    minimum_speech_duration: float = Field(0.2, ge=0.0, le=5.0)
    rhythm_mode: RhythmMode = "moderate"
    tempo_range: tuple[float, float] = (60.0, 200.0)
    enable_voice_ducking: bool = True
    voice_ducking_db: float = Field(-15.0, ge=-40.0, le=0.0)
    ducking_attack: float = Field(0.15, ge=0.0, le=2.0)
    ducking_release: float = Field(0.30, ge=0.0, le=2.0)
    quality_gate_threshold: float | None = Field(None, ge=0.0, le=1.0)
    quality_threshold: float = Field(0.4, ge=0.0, le=1.0)
    enable_crossfades: bool = True
    crossfade_duration: float = Field(0.02, ge=0.0, le=0.5)
    padding_before: float = Field(0.15, ge=0.0, le=2.0)
    padding_after: float = Field(0.20, ge=0.0, le=2.0)
    minimum_segment_duration: float = Field(0.5, ge=0.0, le=10.0)
    merge_gap: float = Field(0.1, ge=0.0, le=5.0)
    maximum_gap_duration: float = Field(2.0, ge=0.0, le=30.0)
    beat_alignment_tolerance: float = Field(0.1, ge=0.01, le=0.25)

    @model_validator(mode="after")
    def _check_ranges(self) -> ProcessingConfiguration:
        if self.maximum_gap_duration < self.merge_gap:
            raise ValueError("maximum_gap_duration must be greater than or equal to merge_gap")
        low, high = self.tempo_range
        if not 0.0 < low < high:
            raise ValueError("tempo_range must be an increasing pair of positive BPM values")
        return self

    @property
    def effective_silence_threshold_db(self) -> float:
        return self.silence_threshold_db + SILENCE_THRESHOLD_ADJUSTMENTS_DB[self.silence_detection_sensitivity]

    @property
    def speech_padding(self) -> tuple[float, float]:
        """(before, after) speech padding scaled by the preservation mode."""

        factor = PRESERVATION_FACTORS[self.speech_preservation_mode]
        return (self.padding_before * factor, self.padding_after * factor)


class AnalysisSettings(BaseModel):
    sample_rate: int = Field(44100, ge=8000, le=192000)
    window_size: int = Field(2048, ge=64, le=65536)
    hop_size: int = Field(512, ge=16, le=65536)
    window_function: WindowFunction = "hann"
    channel_capacity: int = Field(16, ge=1, le=4096)
    classification_timeout_seconds: float = Field(2.0, gt=0.0)
    smoothing_history: int = Field(5, ge=1, le=64)
    smoothing_factor: float = Field(0.3, ge=0.0, le=1.0)
    analysis_workers: int = Field(1, ge=1, le=32)
    stall_timeout_seconds: float = Field(5.0, gt=0.0)
    max_stall_retries: int = Field(12, ge=0)

    @model_validator(mode="after")
    def _check_hop(self) -> AnalysisSettings:
        if self.hop_size > self.window_size:
            raise ValueError("hop_size must not exceed window_size")
        return self


class OutputSettings(BaseModel):
    output_dir: Path = Path("data/outputs")
    include_ffmpeg_commands: bool = True


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str | None = None
    module_levels: dict[str, str] = Field(default_factory=dict)


class Settings(BaseModel):
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    processing: ProcessingConfiguration = Field(default_factory=ProcessingConfiguration)
    preset: str | None = None
    output: OutputSettings = Field(default_factory=OutputSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


PRESETS: dict[str, dict[str, Any]] = {
    "default": {},
    "podcast": {
        "silence_threshold_db": -45.0,
        "minimum_silence_duration": 0.8,
        "speech_sensitivity": "high",
        "speech_preservation_mode": "conservative",
        "rhythm_mode": "disabled",
        "enable_voice_ducking": True,
        "quality_threshold": 0.3,
    },
    "music-video": {
        "silence_threshold_db": -55.0,
        "minimum_silence_duration": 0.3,
        "silence_detection_sensitivity": "high",
        "speech_preservation_mode": "balanced",
        "speech_sensitivity": "medium",
        "rhythm_mode": "aggressive",
        "enable_voice_ducking": False,
        "quality_gate_threshold": 0.6,
    },
    "presentation": {
        "silence_threshold_db": -40.0,
        "minimum_silence_duration": 1.0,
        "silence_detection_sensitivity": "low",
        "speech_preservation_mode": "conservative",
        "speech_sensitivity": "high",
        "rhythm_mode": "disabled",
        "enable_voice_ducking": True,
        "quality_threshold": 0.5,
    },
    "vlog": {
        "silence_threshold_db": -48.0,
        "minimum_silence_duration": 0.6,
        "speech_preservation_mode": "balanced",
        "speech_sensitivity": "medium",
        "rhythm_mode": "moderate",
        "enable_voice_ducking": True,
        "quality_threshold": 0.45,
    },
}


def validate_configuration(
    data: ProcessingConfiguration | Mapping[str, Any] | None = None,
) -> ProcessingConfiguration:
    """Validate processing options, reporting the first invalid field."""

    if isinstance(data, ProcessingConfiguration):
        return data
    return _validate_model(ProcessingConfiguration, data)


def validate_analysis_settings(data: AnalysisSettings | Mapping[str, Any] | None = None) -> AnalysisSettings:
    """Validate analysis framing options, reporting the first invalid field."""

    if isinstance(data, AnalysisSettings):
        return data
    return _validate_model(AnalysisSettings, data)


def resolve_preset(name: str, overrides: Mapping[str, Any] | None = None) -> ProcessingConfiguration:
    """Build a configuration from a named preset plus explicit overrides."""

    key = name.strip().lower()
    if key not in PRESETS:
        expected = ", ".join(sorted(PRESETS))
        raise ConfigurationError("preset", f"unknown preset '{name}'. Expected one of: {expected}.")
    return validate_configuration({**PRESETS[key], **dict(overrides or {})})


def effective_configuration(settings: Settings, preset: str | None = None) -> ProcessingConfiguration:
    """Combine the selected preset with processing values that differ from the defaults."""

    name = preset or settings.preset
    if not name:
        return settings.processing

    defaults = ProcessingConfiguration().model_dump(mode="python")
    overrides = {
        key: value
        for key, value in settings.processing.model_dump(mode="python").items()
        if value != defaults[key]
    }
    return resolve_preset(name, overrides)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    explicit_path = config_path or os.getenv(f"{ENV_PREFIX}CONFIG")
    resolved_path = Path(explicit_path or DEFAULT_CONFIG_PATH)
    if explicit_path is None and not resolved_path.exists():
        raw_config: Any = {}
    else:
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _validate_model(model_cls: type[ModelT], data: Mapping[str, Any] | None) -> ModelT:
    try:
        return model_cls.model_validate(dict(data or {}))
    except ValidationError as exc:
        error = exc.errors()[0]
        names_by_alias = {info.alias: name for name, info in model_cls.model_fields.items() if info.alias}
        loc = [names_by_alias.get(str(part), str(part)) for part in error["loc"]]
        field = ".".join(loc) or model_cls.__name__
        raise ConfigurationError(field, error["msg"]) from exc


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | tuple | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    if existing_value is None and raw_value.strip().lower() in {"", "none", "null"}:
        return None
    return raw_value
