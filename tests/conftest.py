"""Pytest configuration and shared fixtures"""

from __future__ import annotations

import asyncio
from unittest.mock import Mock

import numpy as np
import pytest

from lyricsync.audio import ContextState, MicrophoneConstraints

SAMPLE_RATE = 48_000


class FakeContext:
    """In-memory AudioContext with processor registration semantics."""

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        state: ContextState = ContextState.RUNNING,
        supports_capture: bool = True,
    ) -> None:
        self.sample_rate = sample_rate
        self.state = state
        self.supports_capture = supports_capture
        self.processors: dict = {}
        self.register_calls = 0
        self.resume_calls = 0

    async def resume(self) -> None:
        self.resume_calls += 1
        self.state = ContextState.RUNNING

    async def register_processor(self, name, factory) -> None:
        self.register_calls += 1
        # Yield so concurrent registrations interleave
        await asyncio.sleep(0)
        if not self.supports_capture:
            raise NotImplementedError("AudioWorklet is not available")
        if name in self.processors:
            raise ValueError(f"{name} is already registered")
        self.processors[name] = factory

    def create_processor(self, name, on_batch, batch_size):
        return self.processors[name](on_batch, batch_size)


class FakeConnection:
    def __init__(self, tap: FakeTap, task: asyncio.Task | None) -> None:
        self._tap = tap
        self._task = task
        self.disconnect = Mock(side_effect=self._disconnect)

    def _disconnect(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._tap.active_connections -= 1


class FakeTap:
    """Tap that plays a fixed signal into connected processors.

    A tap without a signal never produces any samples.
    """

    def __init__(self, signal: np.ndarray | None = None, block: int = 1024) -> None:
        self.signal = signal
        self.block = block
        self.connections: list[FakeConnection] = []
        self.active_connections = 0

    def connect(self, processor) -> FakeConnection:
        task = None
        if self.signal is not None:
            task = asyncio.get_running_loop().create_task(self._feed(processor))
        connection = FakeConnection(self, task)
        self.connections.append(connection)
        self.active_connections += 1
        return connection

    async def _feed(self, processor) -> None:
        for start in range(0, len(self.signal), self.block):
            processor.process(self.signal[start : start + self.block])
            await asyncio.sleep(0)


class FakeMicStream:
    def __init__(self, tap: FakeTap) -> None:
        self.tap = tap
        self.stop = Mock()


class FakeMicrophone:
    """Microphone source handing out FakeMicStreams over a fixed tap."""

    def __init__(self, tap: FakeTap, error: Exception | None = None) -> None:
        self._tap = tap
        self._error = error
        self.streams: list[FakeMicStream] = []
        self.constraints: list[MicrophoneConstraints] = []

    async def acquire(self, context, constraints) -> FakeMicStream:
        self.constraints.append(constraints)
        if self._error is not None:
            raise self._error
        stream = FakeMicStream(self._tap)
        self.streams.append(stream)
        return stream


def gated_tone(
    duration_s: float,
    sample_rate: int = SAMPLE_RATE,
    freq: float = 1000.0,
    segment_s: float = 0.05,
    seed: int = 7,
) -> np.ndarray:
    """1 kHz tone switched on and off in a pseudo-random pattern."""
    rng = np.random.default_rng(seed)
    n = int(duration_s * sample_rate)
    t = np.arange(n) / sample_rate
    tone = 0.5 * np.sin(2 * np.pi * freq * t)
    segment = int(segment_s * sample_rate)
    gates = rng.integers(0, 2, size=n // segment + 1).astype(np.float64)
    gate = np.repeat(gates, segment)[:n]
    return (tone * gate).astype(np.float32)


def delayed_pair(
    duration_s: float, delay_s: float, sample_rate: int = SAMPLE_RATE, mic_gain: float = 0.05
) -> tuple[np.ndarray, np.ndarray]:
    """Program buffer and a quieter microphone buffer hearing it delay_s later."""
    delay = int(round(delay_s * sample_rate))
    n = int(duration_s * sample_rate)
    source = gated_tone(duration_s + delay_s + 0.1, sample_rate)
    stream = source[delay : delay + n]
    mic = (source[:n] * mic_gain).astype(np.float32)
    return stream, mic


@pytest.fixture
def context() -> FakeContext:
    return FakeContext()
