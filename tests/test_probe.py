from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

from derush.errors import InputError
from derush.ingest.probe import _run_ffprobe, first_audio_stream, probe_media


def test_run_ffprobe_wraps_missing_binary_error(tmp_path: Path) -> None:
    asset_path = tmp_path / "sample.mkv"
    asset_path.write_bytes(b"data")

    def _raise_missing(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("ffprobe")

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_missing)
        with pytest.raises(RuntimeError, match="ffprobe executable was not found"):
            _run_ffprobe(asset_path)


def test_run_ffprobe_reports_shared_library_issue(tmp_path: Path) -> None:
    asset_path = tmp_path / "sample.mkv"
    asset_path.write_bytes(b"data")

    def _raise_process_error(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.CalledProcessError(
            returncode=127,
            cmd=["ffprobe", str(asset_path)],
            output="",
            stderr="ffprobe: error while loading shared libraries: libavdevice.so.60: cannot open shared object file",
        )

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_process_error)
        with pytest.raises(RuntimeError, match="failed to start because required shared libraries are missing") as excinfo:
            _run_ffprobe(asset_path)

    assert not isinstance(excinfo.value, InputError)


def test_run_ffprobe_reports_unreadable_container_as_input_error(tmp_path: Path) -> None:
    asset_path = tmp_path / "sample.mkv"
    asset_path.write_bytes(b"data")

    def _raise_process_error(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.CalledProcessError(
            returncode=1,
            cmd=["ffprobe", str(asset_path)],
            output="",
            stderr="invalid data found when processing input",
        )

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_process_error)
        with pytest.raises(InputError, match="Unsupported or unreadable container"):
            _run_ffprobe(asset_path)


def test_probe_media_normalizes_streams(tmp_path: Path) -> None:
    asset_path = tmp_path / "interview.mov"
    asset_path.write_bytes(b"data")
    payload = {
        "format": {"format_name": "mov,mp4", "duration": "12.5", "size": "2048", "bit_rate": "N/A"},
        "streams": [
            {"index": 0, "codec_type": "video", "codec_name": "h264", "duration": "12.5"},
            {"index": 1, "codec_type": "audio", "codec_name": "aac", "sample_rate": "48000", "channels": 2},
        ],
    }

    def _fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args=["ffprobe"], returncode=0, stdout=json.dumps(payload), stderr="")

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _fake_run)
        metadata = probe_media(asset_path)

    assert metadata["format"]["duration_seconds"] == 12.5
    assert metadata["format"]["bit_rate"] is None
    assert metadata["audio_stream_count"] == 1
    assert metadata["video_stream_count"] == 1
    assert first_audio_stream(metadata)["index"] == 1
    assert first_audio_stream(metadata)["sample_rate"] == 48000


def test_probe_media_rejects_missing_asset(tmp_path: Path) -> None:
    with pytest.raises(InputError, match="Asset not found"):
        probe_media(tmp_path / "missing.wav")


def test_first_audio_stream_requires_an_audio_track() -> None:
    metadata = {"asset_path": "/media/silent.mp4", "streams": [{"index": 0, "codec_type": "video"}]}

    with pytest.raises(InputError, match="No audio track found"):
        first_audio_stream(metadata)


def test_first_audio_stream_prefers_the_default_track() -> None:
    metadata = {
        "asset_path": "/media/dual.mkv",
        "streams": [
            {"index": 0, "codec_type": "audio", "default": False},
            {"index": 1, "codec_type": "audio", "default": True},
        ],
    }

    assert first_audio_stream(metadata)["index"] == 1
