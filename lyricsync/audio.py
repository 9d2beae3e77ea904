"""Audio graph collaborators for auto-sync.

The detection engine talks to its host through a handful of small protocols:
an AudioContext (sample rate, lifecycle state, processor registration), tap
nodes that capture processors can be connected to, and a microphone source
that yields a live input stream.

This module also provides a sounddevice (PortAudio) backend implementing
those protocols, so the engine can run against real input devices, plus the
context-keyed registry that registers the capture processor exactly once per
audio context.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Final, Protocol

import numpy as np

try:
    import sounddevice
except (ImportError, OSError):  # OSError for missing PortAudio library
    sounddevice = None

from lyricsync.batcher import CAPTURE_PROCESSOR_NAME, DEFAULT_BATCH_SIZE, SampleBatcher
from lyricsync.errors import CaptureUnsupportedError, MicrophoneUnavailableError

if TYPE_CHECKING:
    from sounddevice import CallbackFlags

logger = logging.getLogger(__name__)


class ContextState(str, Enum):
    """Lifecycle state of an audio context."""

    SUSPENDED = "suspended"
    RUNNING = "running"
    CLOSED = "closed"


class AudioProcessor(Protocol):
    """Per-quantum sample consumer connected to a tap."""

    def process(self, frame: np.ndarray | None) -> None:
        """Consume one quantum of samples (called on the audio thread)."""


ProcessorFactory = Callable[[Callable[[np.ndarray], None], int], AudioProcessor]
"""Builds a processor from (on_batch, batch_size)."""


class Connection(Protocol):
    """An edge between a tap and a processor."""

    def disconnect(self) -> None:
        """Remove the edge. Must be safe to call more than once."""


class TapNode(Protocol):
    """Non-destructive read point in the host's audio graph."""

    def connect(self, processor: AudioProcessor) -> Connection:
        """Feed every future quantum of this tap to processor."""


class AudioContext(Protocol):
    """Host audio processing context."""

    @property
    def sample_rate(self) -> int:
        """Sample rate in Hz."""

    @property
    def state(self) -> ContextState:
        """Current lifecycle state."""

    async def resume(self) -> None:
        """Resume a suspended context."""

    async def register_processor(self, name: str, factory: ProcessorFactory) -> None:
        """Register a processor definition; raises if name is taken or unsupported."""

    def create_processor(
        self, name: str, on_batch: Callable[[np.ndarray], None], batch_size: int
    ) -> AudioProcessor:
        """Instantiate a registered processor."""


@dataclass(slots=True)
class MicrophoneConstraints:
    """Requested microphone processing.

    Platforms differ in how much these flags change the captured level; echo
    cancellation in particular can lower the measured RMS by an order of
    magnitude, so they are tunable rather than fixed.

    Attributes:
        echo_cancellation: Request acoustic echo cancellation.
        noise_suppression: Request noise suppression.
        auto_gain_control: Request automatic gain control.
        device: Input device index or name. None for the system default.
    """

    echo_cancellation: bool = False
    noise_suppression: bool = False
    auto_gain_control: bool = False
    device: int | str | None = None


class MicrophoneStream(Protocol):
    """A live microphone input owned by one sync attempt."""

    @property
    def tap(self) -> TapNode:
        """Tap carrying the microphone signal."""

    def stop(self) -> None:
        """Stop the stream and release the device."""


class MicrophoneSource(Protocol):
    """Acquires microphone streams."""

    async def acquire(
        self, context: AudioContext, constraints: MicrophoneConstraints
    ) -> MicrophoneStream:
        """Open a live input stream; raises MicrophoneUnavailableError on failure."""


ContextProvider = Callable[[], Awaitable["AudioContext | None"]]
"""Async callable returning the host context once its audio graph exists."""


class ProcessorRegistry:
    """Tracks which audio contexts have the capture processor registered.

    Registration is keyed by context identity and guarded by a per-context
    lock, so concurrent ensure_registered() calls register exactly once.
    Entries disappear with their context.
    """

    def __init__(
        self,
        name: str = CAPTURE_PROCESSOR_NAME,
        factory: ProcessorFactory | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            name: Identifier the processor is registered under.
            factory: Processor factory. Defaults to SampleBatcher.
        """
        self._name = name
        self._factory: ProcessorFactory = factory or _batcher_factory
        self._registered: weakref.WeakKeyDictionary[AudioContext, bool] = (
            weakref.WeakKeyDictionary()
        )
        self._locks: weakref.WeakKeyDictionary[AudioContext, asyncio.Lock] = (
            weakref.WeakKeyDictionary()
        )

    @property
    def name(self) -> str:
        """Identifier the processor is registered under."""
        return self._name

    def is_registered(self, context: AudioContext) -> bool:
        """Return whether the processor is registered on context."""
        try:
            return self._registered.get(context, False)
        except TypeError:
            return False

    async def ensure_registered(self, context: AudioContext) -> None:
        """Register the capture processor on context unless already done.

        Raises:
            CaptureUnsupportedError: The context rejected the registration.
        """
        try:
            if self._registered.get(context, False):
                return
            lock = self._locks.setdefault(context, asyncio.Lock())
        except TypeError as err:
            # WeakKeyDictionary needs hashable, weak-referenceable contexts
            raise CaptureUnsupportedError(
                "Audio context cannot be tracked for processor registration.",
                processor=self._name,
                error=repr(err),
            ) from err
        async with lock:
            if self._registered.get(context, False):
                return
            try:
                await context.register_processor(self._name, self._factory)
            except Exception as err:
                logger.warning("Capture processor registration failed: %s", err)
                raise CaptureUnsupportedError(
                    "Audio capture is not supported in this environment.",
                    processor=self._name,
                    error=repr(err),
                ) from err
            self._registered[context] = True
            logger.debug("Registered capture processor %r", self._name)

    def forget(self, context: AudioContext) -> None:
        """Drop registration state for a context that was closed."""
        self._registered.pop(context, None)
        self._locks.pop(context, None)


def _batcher_factory(on_batch: Callable[[np.ndarray], None], batch_size: int) -> SampleBatcher:
    return SampleBatcher(on_batch, batch_size=batch_size)


default_registry = ProcessorRegistry()
"""Registry used by orchestrators that are not handed one.

Shared so repeated attempts on the same context register the capture
processor only once.
"""


# ---------------------------------------------------------------------------
# sounddevice backend
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class AudioDevice:
    """Represents an audio input device.

    Attributes:
        index: Device index used for selection.
        name: Human-readable device name.
        input_channels: Number of input channels supported.
        sample_rate: Default sample rate in Hz.
        is_default: Whether this is the system default input device.
    """

    index: int
    name: str
    input_channels: int
    sample_rate: float
    is_default: bool


def query_input_devices() -> list[AudioDevice]:
    """Query all available audio input devices.

    Loopback and monitor devices (which carry program audio) show up here
    next to real microphones.

    Returns:
        List of AudioDevice objects for devices with input channels.
    """
    if sounddevice is None:
        logger.error("sounddevice is not available. Audio capture unavailable.")
        return []
    devices = sounddevice.query_devices()
    default_input = int(sounddevice.default.device[0])

    result: list[AudioDevice] = []
    for i in range(len(devices)):
        dev = devices[i]
        if dev["max_input_channels"] > 0:
            result.append(
                AudioDevice(
                    index=i,
                    name=str(dev["name"]),
                    input_channels=int(dev["max_input_channels"]),
                    sample_rate=float(dev["default_samplerate"]),
                    is_default=(i == default_input),
                )
            )
    return result


class _TapConnection:
    """Connection handle returned by the fan-out taps below."""

    def __init__(self, tap: _FanOutTap, processor: AudioProcessor) -> None:
        self._tap: _FanOutTap | None = tap
        self._processor = processor

    def disconnect(self) -> None:
        tap = self._tap
        if tap is None:
            return
        self._tap = None
        tap._remove(self._processor)  # noqa: SLF001


class _FanOutTap:
    """Fans each quantum out to every connected processor.

    The processor tuple is replaced rather than mutated, so the audio thread
    always iterates a consistent snapshot.
    """

    def __init__(self) -> None:
        self._processors: tuple[AudioProcessor, ...] = ()

    @property
    def connection_count(self) -> int:
        """Number of processors currently connected."""
        return len(self._processors)

    def connect(self, processor: AudioProcessor) -> Connection:
        self._processors = (*self._processors, processor)
        return _TapConnection(self, processor)

    def _remove(self, processor: AudioProcessor) -> None:
        self._processors = tuple(p for p in self._processors if p is not processor)

    def _dispatch(self, frame: np.ndarray) -> None:
        for processor in self._processors:
            try:
                processor.process(frame)
            except Exception:
                logger.exception("Error in capture processor")


class ProgramTap(_FanOutTap):
    """Tap fed by the host with the program audio it is playing.

    The host calls push() with every block it renders (from its own output
    callback or decoder thread).
    """

    def push(self, samples: np.ndarray | bytes, channels: int = 1) -> None:
        """Submit a block of program audio.

        Args:
            samples: float32 samples, or raw PCM int16 bytes.
            channels: Number of interleaved channels in samples.
        """
        if isinstance(samples, bytes | bytearray | memoryview):
            # Convert int16 PCM to float32
            data = np.frombuffer(samples, dtype=np.int16).astype(np.float32) / 32768.0
        else:
            data = np.asarray(samples, dtype=np.float32)
        if channels > 1 and data.ndim == 1:
            data = data.reshape(-1, channels)
        self._dispatch(data)


class InputDeviceTap(_FanOutTap):
    """Tap backed by a sounddevice input stream.

    Used for the microphone and for loopback/monitor devices that carry the
    program audio.
    """

    _BLOCKSIZE: Final[int] = 128
    """Frames per callback (render quantum)."""

    def __init__(self, sample_rate: int, device: int | str | None = None) -> None:
        """Initialize the tap.

        Args:
            sample_rate: Sample rate to open the device at.
            device: Device index or name. None for the system default input.
        """
        super().__init__()
        self._sample_rate = sample_rate
        self._device = device
        self._stream: sounddevice.InputStream | None = None

    @property
    def active(self) -> bool:
        """Whether the underlying input stream is running."""
        return self._stream is not None

    def start(self) -> None:
        """Open and start the input stream."""
        if self._stream is not None:
            return
        if sounddevice is None:
            raise RuntimeError("sounddevice is not available (is PortAudio installed?)")
        stream = sounddevice.InputStream(
            samplerate=self._sample_rate,
            channels=1,  # Capture mono for simplicity
            dtype="float32",
            blocksize=self._BLOCKSIZE,
            callback=self._input_callback,
            device=self._device,
        )
        stream.start()
        self._stream = stream
        logger.info(
            "Input stream started: device=%s, sample_rate=%d, actual_rate=%s",
            self._device,
            self._sample_rate,
            stream.samplerate,
        )

    def stop(self) -> None:
        """Stop and close the input stream."""
        stream = self._stream
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception:
                logger.exception("Failed to close input stream")
        self._stream = None

    def _input_callback(
        self,
        indata: np.ndarray,
        _frames: int,
        _time_info: object,
        status: CallbackFlags,
    ) -> None:
        if status:
            logger.debug("Input callback status: %s", status)
        self._dispatch(indata)


class SoundDeviceMicrophoneStream:
    """Microphone stream handed to one sync attempt."""

    def __init__(self, tap: InputDeviceTap) -> None:
        self._tap = tap

    @property
    def tap(self) -> InputDeviceTap:
        return self._tap

    def stop(self) -> None:
        self._tap.stop()


class SoundDeviceMicrophone:
    """Acquires microphone input through sounddevice."""

    async def acquire(
        self, context: AudioContext, constraints: MicrophoneConstraints
    ) -> SoundDeviceMicrophoneStream:
        """Open the requested input device at the context's sample rate.

        PortAudio exposes no echo cancellation, noise suppression or gain
        control, so those constraints are only honoured when the OS applies
        them to the device itself.

        Raises:
            MicrophoneUnavailableError: The device could not be opened.
        """
        if constraints.echo_cancellation or constraints.noise_suppression:
            logger.debug(
                "Input processing requested (echo_cancellation=%s, noise_suppression=%s, "
                "auto_gain_control=%s); PortAudio applies none of it",
                constraints.echo_cancellation,
                constraints.noise_suppression,
                constraints.auto_gain_control,
            )
        tap = InputDeviceTap(context.sample_rate, device=constraints.device)
        loop = asyncio.get_running_loop()
        # Opening a device can block on some host APIs
        future = loop.run_in_executor(None, tap.start)
        try:
            await asyncio.shield(future)
        except asyncio.CancelledError:
            # The executor keeps running; close the stream once it has opened
            future.add_done_callback(lambda _: tap.stop())
            raise
        except Exception as err:
            tap.stop()
            raise MicrophoneUnavailableError(
                "Microphone access was denied or no input device is available.",
                device=constraints.device,
                error=str(err),
            ) from err
        return SoundDeviceMicrophoneStream(tap)


class SoundDeviceContext:
    """AudioContext backed by sounddevice.

    Processor definitions live on the context; registering the same name twice
    is an error, as it is for the host contexts this stands in for.
    """

    def __init__(self, sample_rate: int = 48_000) -> None:
        """Initialize the context.

        Args:
            sample_rate: Sample rate every stream on this context runs at.
        """
        if sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate}")
        self._sample_rate = sample_rate
        self._state = ContextState.SUSPENDED
        self._processors: dict[str, ProcessorFactory] = {}

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def state(self) -> ContextState:
        return self._state

    async def resume(self) -> None:
        if self._state is ContextState.CLOSED:
            raise RuntimeError("Cannot resume a closed audio context")
        self._state = ContextState.RUNNING

    async def close(self) -> None:
        self._state = ContextState.CLOSED
        self._processors.clear()

    async def register_processor(self, name: str, factory: ProcessorFactory) -> None:
        if self._state is ContextState.CLOSED:
            raise RuntimeError("Audio context is closed")
        if name in self._processors:
            raise ValueError(f"Processor {name!r} is already registered")
        self._processors[name] = factory

    def create_processor(
        self,
        name: str,
        on_batch: Callable[[np.ndarray], None],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> AudioProcessor:
        try:
            factory = self._processors[name]
        except KeyError:
            raise ValueError(f"Processor {name!r} is not registered") from None
        return factory(on_batch, batch_size)
