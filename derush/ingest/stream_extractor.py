from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from types import TracebackType

import numpy as np

from derush.ingest.decoders import PcmDecoder
from derush.models import AudioBuffer

logger = logging.getLogger(__name__)


class StreamExtractor:
    """Frame decoded PCM into overlapping, centred analysis windows.

    Window ``k`` is centred at ``k * hop_size`` frames; the stream is zero-padded by half a
    window on both ends, so an asset of ``n`` frames yields ``ceil(n / hop_size)`` windows.
    Only one window of samples is held at a time, regardless of the asset length.
    """

    def __init__(
        self,
        decoder: PcmDecoder,
        *,
        window_size: int,
        hop_size: int,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if window_size <= 0 or hop_size <= 0 or hop_size > window_size:
            raise ValueError(
                f"Invalid framing: window_size={window_size}, hop_size={hop_size}. "
                "Expected 0 < hop_size <= window_size."
            )

        self.window_size = window_size
        self.hop_size = hop_size
        self.sample_rate = decoder.sample_rate
        self.frames_decoded = 0
        self.windows_emitted = 0

        self._decoder = decoder
        self._cancel_event = cancel_event
        self._started = False
        self._exhausted = False
        self._closed = False

    @property
    def duration(self) -> float:
        return self.frames_decoded / float(self.sample_rate)

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[AudioBuffer]:
        if self._started:
            raise RuntimeError("StreamExtractor is not restartable; re-open the asset to read it again.")
        self._started = True
        return self._generate()

    def __enter__(self) -> StreamExtractor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Release the decoder; safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        self._decoder.close()
        logger.debug(
            "Extractor closed after %s frames (%s windows)",
            self.frames_decoded,
            self.windows_emitted,
        )

    def _generate(self) -> Iterator[AudioBuffer]:
        window = np.zeros(self.window_size, dtype=np.float32)
        half = self.window_size // 2
        hop = self.hop_size

        try:
            self._fill(window, half, self.window_size - half)
            index = 0
            while index * hop < self.frames_decoded:
                if self._cancel_event is not None and self._cancel_event.is_set():
                    logger.debug("Extraction cancelled at window %s", index)
                    return

                samples = window.copy()
                samples.setflags(write=False)
                yield AudioBuffer(
                    index=index,
                    samples=samples,
                    timestamp=(index * hop - half) / float(self.sample_rate),
                    sample_rate=self.sample_rate,
                )
                self.windows_emitted += 1
                index += 1

                window[:-hop] = window[hop:]
                self._fill(window, self.window_size - hop, hop)
        finally:
            self.close()

    def _fill(self, window: np.ndarray, offset: int, count: int) -> None:
        if self._exhausted:
            window[offset : offset + count] = 0.0
            return

        chunk = self._decoder.read(count)[:count]
        received = len(chunk)
        window[offset : offset + received] = chunk
        if received < count:
            window[offset + received : offset + count] = 0.0
            self._exhausted = True
        self.frames_decoded += received
