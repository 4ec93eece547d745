from __future__ import annotations

from pathlib import Path

import pytest

from derush.config import (
    ProcessingConfiguration,
    Settings,
    effective_configuration,
    load_settings,
    resolve_preset,
    validate_analysis_settings,
    validate_configuration,
)
from derush.errors import ConfigurationError


def test_processing_defaults_match_documented_values() -> None:
    config = validate_configuration()

    assert config.silence_threshold_db == -50.0
    assert config.minimum_silence_duration == 0.5
    assert config.speech_sensitivity == "medium"
    assert config.rhythm_mode == "moderate"
    assert config.enable_voice_ducking is True
    assert config.quality_gate_threshold is None
    assert config.crossfade_duration == pytest.approx(0.02)
    assert config.padding_before == pytest.approx(0.15)
    assert config.padding_after == pytest.approx(0.20)
    assert config.silence_detection_sensitivity == "medium"
    assert config.speech_preservation_mode == "aggressive"
    assert config.minimum_speech_duration == pytest.approx(0.2)
    assert config.enable_crossfades is True
    assert config.tempo_range == (60.0, 200.0)


def test_validate_configuration_accepts_camel_case_names() -> None:
    config = validate_configuration({"silenceThresholdDb": -42.0, "rhythmMode": "disabled"})

    assert config.silence_threshold_db == -42.0
    assert config.rhythm_mode == "disabled"


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ({"silence_threshold_db": -5.0}, "silence_threshold_db"),
        ({"silenceThresholdDb": -90.0}, "silence_threshold_db"),
        ({"minimum_silence_duration": 3.0}, "minimum_silence_duration"),
        ({"speech_sensitivity": "extreme"}, "speech_sensitivity"),
        ({"quality_gate_threshold": 1.5}, "quality_gate_threshold"),
        ({"unknown_option": True}, "unknown_option"),
    ],
)
def test_validate_configuration_names_the_offending_field(payload: dict[str, object], field: str) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        validate_configuration(payload)

    assert excinfo.value.field == field
    assert field in str(excinfo.value)


def test_validate_configuration_rejects_inconsistent_gap_settings() -> None:
    with pytest.raises(ConfigurationError, match="maximum_gap_duration"):
        validate_configuration({"merge_gap": 1.0, "maximum_gap_duration": 0.5})


@pytest.mark.parametrize(
    ("sensitivity", "expected"),
    [("low", -55.0), ("medium", -50.0), ("high", -45.0)],
)
def test_silence_detection_sensitivity_adjusts_the_threshold(sensitivity: str, expected: float) -> None:
    config = validate_configuration({"silence_detection_sensitivity": sensitivity})

    assert config.effective_silence_threshold_db == pytest.approx(expected)


def test_preservation_mode_scales_speech_padding() -> None:
    config = validate_configuration({"speechPreservationMode": "conservative"})

    assert config.speech_padding == pytest.approx((0.225, 0.3))


@pytest.mark.parametrize("tempo_range", [(200.0, 60.0), (0.0, 120.0)])
def test_validate_configuration_rejects_bad_tempo_range(tempo_range: tuple[float, float]) -> None:
    with pytest.raises(ConfigurationError, match="tempo_range"):
        validate_configuration({"tempo_range": tempo_range})


def test_configuration_is_immutable() -> None:
    config = ProcessingConfiguration()

    with pytest.raises(ValueError):
        config.silence_threshold_db = -30.0  # type: ignore[misc]


def test_analysis_settings_reject_hop_larger_than_window() -> None:
    with pytest.raises(ConfigurationError):
        validate_analysis_settings({"window_size": 1024, "hop_size": 2048})


def test_resolve_preset_applies_overrides_on_top_of_preset() -> None:
    config = resolve_preset("podcast", {"padding_after": 0.5})

    assert config.speech_sensitivity == "high"
    assert config.rhythm_mode == "disabled"
    assert config.padding_after == 0.5


def test_resolve_preset_rejects_unknown_name() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        resolve_preset("karaoke")

    assert excinfo.value.field == "preset"
    assert "podcast" in str(excinfo.value)


def test_effective_configuration_keeps_explicit_processing_values() -> None:
    settings = Settings(preset="music-video", processing=ProcessingConfiguration(padding_before=0.3))

    config = effective_configuration(settings)

    assert config.rhythm_mode == "aggressive"
    assert config.quality_gate_threshold == 0.6
    assert config.padding_before == 0.3


def test_effective_configuration_without_preset_returns_processing_section() -> None:
    settings = Settings(processing=ProcessingConfiguration(silence_threshold_db=-35.0))

    assert effective_configuration(settings).silence_threshold_db == -35.0


def test_load_settings_reads_yaml_and_applies_env_overrides(tmp_path: Path, monkeypatch) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "\n".join(
            [
                "preset: vlog",
                "analysis:",
                "  sample_rate: 22050",
                "processing:",
                "  silence_threshold_db: -48",
                "logging:",
                "  level: DEBUG",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("DERUSH_PROCESSING__SILENCE_THRESHOLD_DB", "-45")
    monkeypatch.setenv("DERUSH_PROCESSING__QUALITY_GATE_THRESHOLD", "0.6")
    monkeypatch.setenv("DERUSH_ANALYSIS__ANALYSIS_WORKERS", "3")
    monkeypatch.setenv("DERUSH_PROCESSING__TEMPO_RANGE", "[70, 180]")
    monkeypatch.setenv("DERUSH_PROCESSING__NOT_A_FIELD", "ignored")

    settings = load_settings(config_path)

    assert settings.preset == "vlog"
    assert settings.analysis.sample_rate == 22050
    assert settings.analysis.analysis_workers == 3
    assert settings.processing.silence_threshold_db == -45.0
    assert settings.processing.quality_gate_threshold == 0.6
    assert settings.processing.tempo_range == (70.0, 180.0)
    assert settings.logging.level == "DEBUG"


def test_load_settings_falls_back_to_defaults_without_config_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DERUSH_CONFIG", raising=False)

    settings = load_settings()

    assert settings == Settings()


def test_shipped_default_config_matches_builtin_defaults() -> None:
    shipped = Path(__file__).resolve().parents[1] / "configs" / "default.yaml"

    settings = load_settings(shipped)

    assert settings.processing == ProcessingConfiguration()
    assert settings.analysis == validate_analysis_settings()
