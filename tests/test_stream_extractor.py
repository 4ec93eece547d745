from __future__ import annotations

import io
import subprocess
import threading
import tracemalloc
import wave
from pathlib import Path

import numpy as np
import pytest

from derush.errors import InputError
from derush.ingest import decoders
from derush.ingest.decoders import ArrayDecoder, FfmpegDecoder, PcmDecoder, WavDecoder, open_decoder
from derush.ingest.stream_extractor import StreamExtractor


class _SineDecoder(PcmDecoder):
    """Generates a long sine on the fly without ever materialising the whole signal."""

    def __init__(self, total_frames: int, sample_rate: int) -> None:
        self.sample_rate = sample_rate
        self.total_frames = total_frames
        self.position = 0
        self.closed = False

    def read(self, frame_count: int) -> np.ndarray:
        count = max(0, min(frame_count, self.total_frames - self.position))
        indices = np.arange(self.position, self.position + count, dtype=np.float64)
        self.position += count
        return (0.1 * np.sin(2.0 * np.pi * 220.0 * indices / self.sample_rate)).astype(np.float32)

    def close(self) -> None:
        self.closed = True


def _write_wav(path: Path, samples: np.ndarray, sample_rate: int, sample_width: int = 2) -> None:
    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(sample_width)
        handle.setframerate(sample_rate)
        if sample_width == 2:
            handle.writeframes((np.clip(samples, -1.0, 1.0) * 32767).astype("<i2").tobytes())
        else:
            handle.writeframes(((np.clip(samples, -1.0, 1.0) * 127) + 128).astype(np.uint8).tobytes())


def test_extractor_uses_centred_framing() -> None:
    signal = (np.arange(10_000, dtype=np.float32) / 10_000.0).astype(np.float32)
    extractor = StreamExtractor(ArrayDecoder(signal, 8000), window_size=1024, hop_size=256)

    buffers = list(extractor)

    assert len(buffers) == 40
    assert [buffer.index for buffer in buffers] == list(range(40))
    assert buffers[0].center_time == pytest.approx(0.0)
    assert buffers[4].center_time == pytest.approx(4 * 256 / 8000)
    assert np.all(buffers[0].samples[:512] == 0.0)
    np.testing.assert_array_equal(buffers[0].samples[512:], signal[:512])
    np.testing.assert_array_equal(buffers[5].samples, signal[768:1792])
    assert extractor.frames_decoded == 10_000
    assert extractor.duration == pytest.approx(10_000 / 8000)


def test_extractor_buffers_are_read_only_copies() -> None:
    extractor = StreamExtractor(ArrayDecoder(np.ones(4096), 8000), window_size=512, hop_size=128)

    first, second = list(extractor)[:2]

    assert first.samples.flags.writeable is False
    assert first.samples is not second.samples
    with pytest.raises(ValueError):
        first.samples[0] = 2.0


def test_extractor_is_not_restartable_and_releases_decoder() -> None:
    decoder = ArrayDecoder(np.zeros(2048), 8000)
    extractor = StreamExtractor(decoder, window_size=512, hop_size=256)

    assert len(list(extractor)) == 8
    assert decoder.closed is True
    assert extractor.closed is True
    with pytest.raises(RuntimeError, match="not restartable"):
        iter(extractor)


def test_extractor_stops_on_cancellation_and_closes_decoder() -> None:
    cancel_event = threading.Event()
    decoder = ArrayDecoder(np.zeros(80_000), 8000)
    extractor = StreamExtractor(decoder, window_size=512, hop_size=256, cancel_event=cancel_event)

    seen = 0
    for buffer in extractor:
        seen += 1
        if buffer.index == 2:
            cancel_event.set()

    assert seen == 3
    assert decoder.closed is True


def test_extractor_rejects_invalid_framing() -> None:
    with pytest.raises(ValueError, match="Invalid framing"):
        StreamExtractor(ArrayDecoder(np.zeros(10), 8000), window_size=256, hop_size=512)


def test_extractor_memory_does_not_grow_with_duration() -> None:
    sample_rate = 8000
    total_frames = sample_rate * 600
    extractor = StreamExtractor(_SineDecoder(total_frames, sample_rate), window_size=1024, hop_size=256)

    tracemalloc.start()
    try:
        count = sum(1 for _ in extractor)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert count == total_frames // 256
    # A fully decoded float32 copy would need ~19 MB.
    assert peak < 512 * 1024


def test_array_decoder_downmixes_channels() -> None:
    stereo = np.stack([np.full(100, 0.2), np.full(100, 0.6)], axis=1)
    decoder = ArrayDecoder(stereo, 16000)

    chunk = decoder.read(50)

    assert chunk.dtype == np.float32
    assert chunk.shape == (50,)
    assert np.allclose(chunk, 0.4)


def test_wav_decoder_reads_16_bit_pcm(tmp_path: Path) -> None:
    wav_path = tmp_path / "tone.wav"
    samples = 0.5 * np.sin(2.0 * np.pi * 440.0 * np.arange(1600) / 16000.0)
    _write_wav(wav_path, samples, 16000)

    with WavDecoder(wav_path) as decoder:
        first = decoder.read(1000)
        rest = decoder.read(1000)

    assert decoder.sample_rate == 16000
    assert len(first) == 1000
    assert len(rest) == 600
    assert np.allclose(first, samples[:1000], atol=1e-3)


def test_wav_decoder_rejects_8_bit_input(tmp_path: Path) -> None:
    wav_path = tmp_path / "eight_bit.wav"
    _write_wav(wav_path, np.zeros(100), 8000, sample_width=1)

    with pytest.raises(InputError, match="16-bit"):
        WavDecoder(wav_path)


def test_open_decoder_streams_matching_wav_directly(tmp_path: Path) -> None:
    wav_path = tmp_path / "voice.wav"
    _write_wav(wav_path, np.zeros(800), 8000)

    decoder = open_decoder(wav_path, 8000)
    try:
        assert isinstance(decoder, WavDecoder)
    finally:
        decoder.close()


def test_open_decoder_rejects_missing_asset(tmp_path: Path) -> None:
    with pytest.raises(InputError, match="Asset not found"):
        open_decoder(tmp_path / "missing.mp4", 44100)


def test_open_decoder_requires_an_audio_stream(tmp_path: Path, monkeypatch) -> None:
    video_path = tmp_path / "silent.mp4"
    video_path.write_bytes(b"data")
    monkeypatch.setattr(
        decoders,
        "probe_media",
        lambda _: {"asset_path": str(video_path), "streams": [{"index": 0, "codec_type": "video"}]},
    )

    with pytest.raises(InputError, match="No audio track found"):
        open_decoder(video_path, 44100)


def test_ffmpeg_decoder_wraps_missing_binary(tmp_path: Path, monkeypatch) -> None:
    def _raise_missing(*args: object, **kwargs: object) -> subprocess.Popen[bytes]:
        raise FileNotFoundError("ffmpeg")

    monkeypatch.setattr(subprocess, "Popen", _raise_missing)

    with pytest.raises(RuntimeError, match="ffmpeg executable was not found"):
        FfmpegDecoder(tmp_path / "clip.mp4", 44100, stream_index=1)


class _FakeFfmpeg:
    def __init__(self, payload: bytes, returncode: int, stderr: bytes = b"") -> None:
        self.stdout = io.BytesIO(payload)
        self.stderr = io.BytesIO(stderr)
        self.returncode = returncode

    def poll(self) -> int:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        return self.returncode

    def terminate(self) -> None:
        pass

    def kill(self) -> None:
        pass


def _fake_audio_asset(tmp_path: Path, monkeypatch, process: _FakeFfmpeg) -> Path:
    asset_path = tmp_path / "take.mp4"
    asset_path.write_bytes(b"data")
    monkeypatch.setattr(
        decoders,
        "probe_media",
        lambda _: {
            "asset_path": str(asset_path),
            "streams": [{"index": 1, "codec_type": "audio", "codec_name": "aac"}],
        },
    )
    monkeypatch.setattr(subprocess, "Popen", lambda *args, **kwargs: process)
    return asset_path


def test_open_decoder_fails_fast_when_ffmpeg_cannot_decode(tmp_path: Path, monkeypatch) -> None:
    process = _FakeFfmpeg(b"", 1, stderr=b"Invalid data found when processing input")
    asset_path = _fake_audio_asset(tmp_path, monkeypatch, process)

    with pytest.raises(InputError, match="ffmpeg could not decode audio"):
        open_decoder(asset_path, 44100)

    assert process.stdout.closed


def test_primed_ffmpeg_samples_are_served_first(tmp_path: Path, monkeypatch) -> None:
    samples = np.linspace(-0.5, 0.5, 10, dtype=np.float32)
    asset_path = _fake_audio_asset(tmp_path, monkeypatch, _FakeFfmpeg(samples.astype("<f4").tobytes(), 0))

    decoder = open_decoder(asset_path, 44100)

    assert isinstance(decoder, FfmpegDecoder)
    np.testing.assert_array_equal(decoder.read(4), samples[:4])
    np.testing.assert_array_equal(decoder.read(10), samples[4:])
    assert len(decoder.read(10)) == 0
    decoder.close()
