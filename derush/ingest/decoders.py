from __future__ import annotations

import logging
import subprocess
import wave
from abc import ABC, abstractmethod
from pathlib import Path
from types import TracebackType

import numpy as np

from derush.errors import InputError
from derush.ingest.probe import first_audio_stream, probe_media

logger = logging.getLogger(__name__)

_FLOAT32_BYTES = 4
PRIME_FRAMES = 4096


class PcmDecoder(ABC):
    """Source of canonical mono float32 PCM, read in caller-sized chunks.

    ``read`` returns fewer frames than requested only once the stream is exhausted.
    """

    sample_rate: int

    @abstractmethod
    def read(self, frame_count: int) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> PcmDecoder:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


class ArrayDecoder(PcmDecoder):
    """Serve an in-memory signal; 2-D input is treated as (frames, channels) and downmixed."""

    def __init__(self, samples: np.ndarray, sample_rate: int) -> None:
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 2:
            data = data.mean(axis=1).astype(np.float32)
        elif data.ndim != 1:
            raise InputError(f"Expected a 1-D or 2-D sample array, got shape {data.shape}.")

        self.sample_rate = int(sample_rate)
        self.closed = False
        self._samples = data
        self._position = 0

    def read(self, frame_count: int) -> np.ndarray:
        chunk = self._samples[self._position : self._position + frame_count]
        self._position += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed = True


class WavDecoder(PcmDecoder):
    """Stream 16-bit PCM WAV files without spawning ffmpeg."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            self._wav = wave.open(str(self.path), "rb")
        except (wave.Error, EOFError) as exc:
            raise InputError(f"Unreadable WAV file: {self.path} ({exc})") from exc

        self.sample_rate = int(self._wav.getframerate())
        self._channels = self._wav.getnchannels()
        self._closed = False

        if self._wav.getsampwidth() != 2:
            self.close()
            raise InputError("Only 16-bit PCM WAV input is supported for direct decoding.")

    def read(self, frame_count: int) -> np.ndarray:
        raw = self._wav.readframes(frame_count)
        samples = np.frombuffer(raw, dtype=np.int16).astype(np.float32)
        if self._channels > 1:
            samples = samples.reshape(-1, self._channels).mean(axis=1)
        return samples / 32768.0

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._wav.close()


class FfmpegDecoder(PcmDecoder):
    """Decode any ffmpeg-readable audio stream to mono f32le through a pipe."""

    def __init__(self, path: str | Path, sample_rate: int, stream_index: int | None = None) -> None:
        self.path = Path(path)
        self.sample_rate = int(sample_rate)
        self.frames_read = 0
        self._closed = False
        self._exit_checked = False
        self._head = np.zeros(0, dtype=np.float32)

        stream_map = f"0:{stream_index}" if stream_index is not None else "0:a:0"
        command = [
            "ffmpeg",
            "-v",
            "error",
            "-nostdin",
            "-i",
            str(self.path),
            "-map",
            stream_map,
            "-vn",
            "-ac",
            "1",
            "-ar",
            str(self.sample_rate),
            "-f",
            "f32le",
            "pipe:1",
        ]

        try:
            self._process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise RuntimeError(
                "ffmpeg executable was not found. Install FFmpeg so ffmpeg is available on PATH."
            ) from exc

    def prime(self, frame_count: int = PRIME_FRAMES) -> None:
        """Read the first chunk now so an undecodable stream fails before analysis starts."""

        self._head = np.concatenate([self._head, self._read_pipe(frame_count)])

    def read(self, frame_count: int) -> np.ndarray:
        if not len(self._head):
            return self._read_pipe(frame_count)

        head, self._head = self._head[:frame_count], self._head[frame_count:]
        if len(head) == frame_count:
            return head
        return np.concatenate([head, self._read_pipe(frame_count - len(head))])

    def _read_pipe(self, frame_count: int) -> np.ndarray:
        if self._closed or self._process.stdout is None:
            return np.zeros(0, dtype=np.float32)

        wanted = frame_count * _FLOAT32_BYTES
        raw = self._process.stdout.read(wanted)
        usable = len(raw) - (len(raw) % _FLOAT32_BYTES)
        samples = np.frombuffer(raw[:usable], dtype="<f4").astype(np.float32)
        self.frames_read += len(samples)

        if len(raw) < wanted:
            self._check_exit()
        return samples

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()

        for stream in (self._process.stdout, self._process.stderr):
            if stream is not None:
                stream.close()

    def _check_exit(self) -> None:
        if self._exit_checked:
            return
        self._exit_checked = True

        returncode = self._process.wait()
        if returncode == 0:
            return

        stderr = ""
        if self._process.stderr is not None:
            stderr = self._process.stderr.read().decode("utf-8", errors="replace").strip()
        if self.frames_read == 0:
            details = f" ffmpeg stderr: {stderr}" if stderr else ""
            raise InputError(f"ffmpeg could not decode audio from {self.path}.{details}")
        logger.warning(
            "ffmpeg exited with code %s after %s frames of %s: %s",
            returncode,
            self.frames_read,
            self.path,
            stderr,
        )


def open_decoder(asset_path: str | Path, sample_rate: int) -> PcmDecoder:
    """Open the first audio track of an asset as canonical mono float32 PCM."""

    source_path = Path(asset_path).expanduser().resolve()
    if not source_path.exists():
        raise InputError(f"Asset not found: {source_path}")

    if source_path.suffix.lower() == ".wav":
        direct = _open_direct_wav(source_path, sample_rate)
        if direct is not None:
            return direct

    metadata = probe_media(source_path)
    stream = first_audio_stream(metadata)
    logger.debug("Decoding stream %s (%s) of %s", stream["index"], stream["codec_name"], source_path)
    decoder = FfmpegDecoder(source_path, sample_rate, stream_index=stream["index"])
    try:
        decoder.prime()
    except InputError:
        decoder.close()
        raise
    return decoder


def _open_direct_wav(path: Path, sample_rate: int) -> WavDecoder | None:
    try:
        decoder = WavDecoder(path)
    except InputError as exc:
        logger.debug("Direct WAV decoding unavailable for %s (%s); using ffmpeg.", path, exc)
        return None

    if decoder.sample_rate != sample_rate:
        logger.debug(
            "WAV rate %s differs from canonical %s for %s; using ffmpeg to resample.",
            decoder.sample_rate,
            sample_rate,
            path,
        )
        decoder.close()
        return None
    return decoder
