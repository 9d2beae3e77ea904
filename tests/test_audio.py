"""Tests for the program tap, the sounddevice context and the command line"""

import numpy as np
import pytest

from lyricsync.__main__ import build_parser, main
from lyricsync.audio import (
    ContextState,
    ProcessorRegistry,
    ProgramTap,
    SoundDeviceContext,
)
from lyricsync.batcher import CAPTURE_PROCESSOR_NAME, SampleBatcher


class RecordingProcessor:
    def __init__(self) -> None:
        self.frames = []

    def process(self, frame):
        self.frames.append(frame)


def test_program_tap_converts_int16_pcm():
    tap = ProgramTap()
    processor = RecordingProcessor()
    tap.connect(processor)

    pcm = np.array([0, 16384, -32768, 32767], dtype=np.int16).tobytes()
    tap.push(pcm)

    frame = processor.frames[0]
    assert frame.dtype == np.float32
    np.testing.assert_allclose(frame, [0.0, 0.5, -1.0, 32767 / 32768])


def test_program_tap_reshapes_interleaved_channels():
    tap = ProgramTap()
    processor = RecordingProcessor()
    tap.connect(processor)

    tap.push(np.array([0.1, 0.9, 0.2, 0.9], dtype=np.float32), channels=2)

    assert processor.frames[0].shape == (2, 2)


def test_program_tap_fans_out_and_disconnects():
    tap = ProgramTap()
    first, second = RecordingProcessor(), RecordingProcessor()
    connection = tap.connect(first)
    tap.connect(second)

    tap.push(np.ones(4, dtype=np.float32))
    connection.disconnect()
    connection.disconnect()
    tap.push(np.ones(4, dtype=np.float32))

    assert len(first.frames) == 1
    assert len(second.frames) == 2
    assert tap.connection_count == 1


def test_program_tap_isolates_processor_errors():
    class Broken:
        def process(self, frame):
            raise RuntimeError("boom")

    tap = ProgramTap()
    healthy = RecordingProcessor()
    tap.connect(Broken())
    tap.connect(healthy)

    tap.push(np.ones(4, dtype=np.float32))

    assert len(healthy.frames) == 1


async def test_sounddevice_context_lifecycle():
    context = SoundDeviceContext(sample_rate=44_100)
    assert context.state == ContextState.SUSPENDED

    await context.resume()
    assert context.state == ContextState.RUNNING

    await context.close()
    assert context.state == ContextState.CLOSED
    with pytest.raises(RuntimeError):
        await context.resume()
    with pytest.raises(RuntimeError):
        await context.register_processor("x", SampleBatcher)


async def test_sounddevice_context_processor_registration():
    context = SoundDeviceContext()
    registry = ProcessorRegistry()

    with pytest.raises(ValueError):
        context.create_processor(CAPTURE_PROCESSOR_NAME, lambda _b: None)

    await registry.ensure_registered(context)
    with pytest.raises(ValueError):
        await context.register_processor(CAPTURE_PROCESSOR_NAME, SampleBatcher)

    batches = []
    processor = context.create_processor(CAPTURE_PROCESSOR_NAME, batches.append, 4)
    processor.process(np.ones(8, dtype=np.float32))
    assert len(batches) == 2


def test_sounddevice_context_rejects_bad_sample_rate():
    with pytest.raises(ValueError):
        SoundDeviceContext(sample_rate=0)


def test_parser_defaults():
    args = build_parser().parse_args(["--program-device", "3"])

    assert args.program_device == 3
    assert args.mic_device is None
    assert args.duration_ms == 1500.0
    assert args.max_lag == 2.0
    assert args.threshold == 0.2
    assert args.min_rms == 0.001
    assert args.echo_cancellation is False


def test_parser_accepts_device_names():
    args = build_parser().parse_args(["--program-device", "Monitor of Speakers"])

    assert args.program_device == "Monitor of Speakers"


def test_main_requires_program_device(capsys):
    assert main([]) == 2
    assert "--program-device" in capsys.readouterr().out
