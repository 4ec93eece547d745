from __future__ import annotations

import json
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

from derush.errors import InputError

FFPROBE_COMMAND = (
    "ffprobe",
    "-v",
    "error",
    "-print_format",
    "json",
    "-show_format",
    "-show_streams",
)

_SHARED_LIBRARY_MARKERS = ("error while loading shared libraries", "cannot open shared object file")
_MISSING_VALUES = (None, "", "N/A")


def _optional(convert: Callable[[Any], Any]) -> Callable[[Any], Any]:
    def _convert(raw: Any) -> Any:
        return None if raw in _MISSING_VALUES else convert(raw)

    return _convert


_as_int = _optional(int)
_as_float = _optional(float)
_as_str = _optional(str)

# (output key, ffprobe key, converter)
_FORMAT_FIELDS = (
    ("format_name", "format_name", _as_str),
    ("duration_seconds", "duration", _as_float),
    ("start_seconds", "start_time", _as_float),
    ("size_bytes", "size", _as_int),
    ("bit_rate", "bit_rate", _as_int),
)
_STREAM_FIELDS = (
    ("index", "index", _as_int),
    ("codec_type", "codec_type", _as_str),
    ("codec_name", "codec_name", _as_str),
    ("sample_rate", "sample_rate", _as_int),
    ("channels", "channels", _as_int),
    ("channel_layout", "channel_layout", _as_str),
    ("sample_format", "sample_fmt", _as_str),
    ("duration_seconds", "duration", _as_float),
    ("bit_rate", "bit_rate", _as_int),
)


def probe_media(asset_path: str | Path) -> dict[str, Any]:
    """Describe an asset's container and streams, with audio streams listed first-class."""

    source_path = Path(asset_path).expanduser().resolve()
    if not source_path.exists():
        raise InputError(f"Asset not found: {source_path}")

    payload = _run_ffprobe(source_path)
    streams = [_pick(stream, _STREAM_FIELDS) | {"default": _is_default(stream)} for stream in payload.get("streams", [])]
    codec_types = [stream["codec_type"] for stream in streams]

    return {
        "status": "ok",
        "asset_path": str(source_path),
        "format": _pick(payload.get("format", {}), _FORMAT_FIELDS),
        "streams": streams,
        "audio_stream_count": codec_types.count("audio"),
        "video_stream_count": codec_types.count("video"),
    }


def first_audio_stream(metadata: dict[str, Any]) -> dict[str, Any]:
    """Pick the audio stream to decode: the default-flagged one, else the first listed."""

    audio = [stream for stream in metadata.get("streams", []) if stream.get("codec_type") == "audio"]
    if not audio:
        raise InputError(f"No audio track found in {metadata.get('asset_path', 'asset')}.")
    return next((stream for stream in audio if stream.get("default")), audio[0])


def _run_ffprobe(asset_path: Path) -> dict[str, Any]:
    try:
        completed = subprocess.run(
            [*FFPROBE_COMMAND, str(asset_path)],
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if any(marker in stderr for marker in _SHARED_LIBRARY_MARKERS):
            raise RuntimeError(
                "ffprobe is installed but failed to start because required shared libraries are missing. "
                f"ffprobe stderr: {stderr}"
            ) from exc
        suffix = f" ffprobe stderr: {stderr}" if stderr else ""
        raise InputError(f"Unsupported or unreadable container: {asset_path}.{suffix}") from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise InputError(f"ffprobe returned invalid JSON output for {asset_path}.") from exc


def _pick(entry: dict[str, Any], fields: tuple[tuple[str, str, Callable[[Any], Any]], ...]) -> dict[str, Any]:
    return {name: convert(entry.get(source)) for name, source, convert in fields}


def _is_default(stream: dict[str, Any]) -> bool:
    return bool((stream.get("disposition") or {}).get("default"))
