"""Time-boxed PCM capture from audio graph taps.

A CaptureSession wires one tap into a capture processor for a fixed window and
collects the batches it emits. The DualCaptureCoordinator runs the program and
microphone sessions side by side so both buffers cover the same stretch of
wall-clock time.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from dataclasses import dataclass

import numpy as np

from lyricsync.audio import AudioContext, Connection, ProcessorRegistry, TapNode
from lyricsync.batcher import CAPTURE_PROCESSOR_NAME, DEFAULT_BATCH_SIZE
from lyricsync.errors import CaptureTimeoutError, CaptureUnsupportedError
from lyricsync.utils import create_task

logger = logging.getLogger(__name__)


class CaptureSession:
    """Captures target_samples from one tap, or fails once the timeout elapses.

    Batches arrive on the audio thread and are moved onto the event loop with
    call_soon_threadsafe; the session only ever touches its buffers from the
    loop. Every connection the session makes is removed before run() returns
    or raises.
    """

    def __init__(
        self,
        context: AudioContext,
        tap: TapNode,
        target_samples: int,
        timeout: float,
        *,
        label: str = "capture",
        processor_name: str = CAPTURE_PROCESSOR_NAME,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Initialize the capture session.

        Args:
            context: Audio context the capture processor is registered on.
            tap: Tap to read samples from.
            target_samples: Samples to collect before resolving.
            timeout: Seconds to wait for target_samples before failing.
            label: Name used in logs and diagnostics ("stream", "mic").
            processor_name: Registered name of the capture processor.
            batch_size: Samples per batch emitted by the processor.
        """
        if target_samples <= 0:
            raise ValueError(f"target_samples must be positive, got {target_samples}")
        self._context = context
        self._tap = tap
        self._target_samples = target_samples
        self._timeout = timeout
        self._label = label
        self._processor_name = processor_name
        self._batch_size = batch_size

        self._batches: list[np.ndarray] = []
        self._collected = 0
        self._closed = False
        self._complete: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def label(self) -> str:
        """Name of this session."""
        return self._label

    @property
    def collected_samples(self) -> int:
        """Samples collected so far."""
        return self._collected

    async def run(self) -> np.ndarray:
        """Capture until target_samples are collected.

        Returns:
            Exactly target_samples float32 samples.

        Raises:
            CaptureUnsupportedError: The processor could not be created or connected.
            CaptureTimeoutError: The timeout elapsed first.
        """
        self._loop = asyncio.get_running_loop()
        self._complete = asyncio.Event()

        connections: list[Connection] = []
        try:
            try:
                processor = self._context.create_processor(
                    self._processor_name, self._on_batch, self._batch_size
                )
                connections.append(self._tap.connect(processor))
            except Exception as err:
                raise CaptureUnsupportedError(
                    f"Could not connect the {self._label} capture processor.",
                    label=self._label,
                    error=repr(err),
                ) from err

            logger.debug(
                "%s capture started: target=%d samples, timeout=%.2fs",
                self._label,
                self._target_samples,
                self._timeout,
            )
            try:
                await asyncio.wait_for(self._complete.wait(), timeout=self._timeout)
            except TimeoutError:
                logger.warning(
                    "%s capture timed out with %d/%d samples",
                    self._label,
                    self._collected,
                    self._target_samples,
                )
                raise CaptureTimeoutError(
                    f"The {self._label} capture did not receive enough audio in time.",
                    label=self._label,
                    collected_samples=self._collected,
                    target_samples=self._target_samples,
                    sample_rate=self._context.sample_rate,
                ) from None
        finally:
            self._closed = True
            for connection in connections:
                try:
                    connection.disconnect()
                except Exception:
                    logger.exception("Failed to disconnect %s capture", self._label)

        buffer = np.concatenate(self._batches)[: self._target_samples]
        self._batches = []
        logger.debug("%s capture complete: %d samples", self._label, len(buffer))
        return buffer

    def _on_batch(self, batch: np.ndarray) -> None:
        """Receive a batch on the audio thread."""
        loop = self._loop
        if loop is None or self._closed:
            return
        loop.call_soon_threadsafe(self._append, batch)

    def _append(self, batch: np.ndarray) -> None:
        if self._closed:
            return
        self._batches.append(batch)
        self._collected += len(batch)
        if self._collected >= self._target_samples and self._complete is not None:
            self._complete.set()


@dataclass(frozen=True, slots=True)
class CapturedPair:
    """Program and microphone buffers covering the same window.

    Attributes:
        stream: Program audio samples.
        mic: Microphone samples.
        sample_rate: Sample rate of both buffers in Hz.
    """

    stream: np.ndarray
    mic: np.ndarray
    sample_rate: int


class DualCaptureCoordinator:
    """Runs the program and microphone capture sessions concurrently.

    Both sessions start in the same event loop iteration. The first failure
    cancels the other session, and both graphs are torn down before the error
    propagates.
    """

    def __init__(
        self,
        context: AudioContext,
        program_tap: TapNode,
        mic_tap: TapNode,
        *,
        duration_ms: float,
        timeout_padding_ms: float,
        batch_size: int = DEFAULT_BATCH_SIZE,
        registry: ProcessorRegistry | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            context: Audio context both taps belong to.
            program_tap: Tap carrying the program audio.
            mic_tap: Tap carrying the microphone signal.
            duration_ms: Capture window length.
            timeout_padding_ms: Grace period added to the window before a
                session is considered stalled.
            batch_size: Samples per batch emitted by the capture processor.
            registry: Registry used to make sure the capture processor exists
                on context. When None, registration is the caller's job.
        """
        self._context = context
        self._program_tap = program_tap
        self._mic_tap = mic_tap
        self._duration_ms = duration_ms
        self._timeout_padding_ms = timeout_padding_ms
        self._batch_size = batch_size
        self._registry = registry

    async def capture(self) -> CapturedPair:
        """Capture both signals over the configured window."""
        if self._registry is not None:
            await self._registry.ensure_registered(self._context)
        processor_name = (
            self._registry.name if self._registry is not None else CAPTURE_PROCESSOR_NAME
        )

        sample_rate = self._context.sample_rate
        target_samples = round(self._duration_ms * sample_rate / 1000)
        timeout = (self._duration_ms + self._timeout_padding_ms) / 1000

        sessions = [
            CaptureSession(
                self._context,
                tap,
                target_samples,
                timeout,
                label=label,
                processor_name=processor_name,
                batch_size=self._batch_size,
            )
            for label, tap in (("stream", self._program_tap), ("mic", self._mic_tap))
        ]
        tasks = [create_task(s.run(), name=f"capture-{s.label}") for s in sessions]
        # Failures in the order the sessions finished
        failures: list[BaseException] = []
        for task in tasks:
            task.add_done_callback(functools.partial(_record_failure, failures))

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if not failures:
            # Done callbacks of tasks that finished in this iteration may still be pending
            for task in tasks:
                _record_failure(failures, task)
        if failures:
            raise failures[0]

        stream, mic = (task.result() for task in tasks)
        return CapturedPair(stream=stream, mic=mic, sample_rate=sample_rate)


def _record_failure(failures: list[BaseException], task: asyncio.Task[np.ndarray]) -> None:
    if task.done() and not task.cancelled():
        exc = task.exception()
        if exc is not None and exc not in failures:
            failures.append(exc)
