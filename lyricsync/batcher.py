"""PCM batching for real-time audio callbacks.

The SampleBatcher runs on the audio callback thread. It copies each incoming
quantum into a preallocated accumulator and hands a completed batch to its
consumer whenever the accumulator fills.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Final

import numpy as np

logger = logging.getLogger(__name__)

CAPTURE_PROCESSOR_NAME: Final[str] = "pcm-recorder"
"""Stable identifier the batcher is registered under on an audio context."""

DEFAULT_BATCH_SIZE: Final[int] = 2048
"""Samples per emitted batch (~43ms at 48kHz)."""


class SampleBatcher:
    """Accumulates mono float32 samples into fixed-size batches.

    process() is called once per audio quantum (typically 128-1024 frames,
    dictated by the host). Each completed batch is a fresh array handed to
    on_batch; the accumulator itself is reused. on_batch must not block, it
    is called on the real-time thread.
    """

    def __init__(
        self,
        on_batch: Callable[[np.ndarray], None],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Initialize the batcher.

        Args:
            on_batch: Non-blocking handoff for each completed batch.
            batch_size: Number of samples per batch.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._on_batch = on_batch
        self._batch_size = batch_size
        self._buffer = np.zeros(batch_size, dtype=np.float32)
        self._write_index = 0
        self.samples_seen = 0
        self.batches_emitted = 0

    @property
    def batch_size(self) -> int:
        """Number of samples per emitted batch."""
        return self._batch_size

    @property
    def pending(self) -> int:
        """Samples accumulated since the last emitted batch."""
        return self._write_index

    def process(self, frame: np.ndarray | None) -> None:
        """Consume one quantum of samples.

        Multi-channel input is reduced to its first channel. A missing or
        empty quantum is silence from upstream and is ignored.
        """
        if frame is None or frame.size == 0:
            return
        channel = frame[:, 0] if frame.ndim > 1 else frame

        offset = 0
        remaining = len(channel)
        self.samples_seen += remaining
        while remaining > 0:
            take = min(remaining, self._batch_size - self._write_index)
            self._buffer[self._write_index : self._write_index + take] = channel[
                offset : offset + take
            ]
            self._write_index += take
            offset += take
            remaining -= take

            if self._write_index >= self._batch_size:
                self._emit(self._buffer.copy())
                self._write_index = 0

    def flush(self) -> np.ndarray:
        """Return the pending partial batch and reset the accumulator."""
        partial = self._buffer[: self._write_index].copy()
        self._write_index = 0
        return partial

    def _emit(self, batch: np.ndarray) -> None:
        self.batches_emitted += 1
        try:
            self._on_batch(batch)
        except Exception:
            # Never let a consumer error escape into the audio thread
            logger.exception("Error handing off PCM batch")
