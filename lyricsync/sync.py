"""Auto-sync orchestration.

An auto-sync attempt listens to the program audio and the microphone at the
same time, works out how far the microphone lags behind the program, and
reports that delay as a lyrics offset:

    IDLE -> ACQUIRING_CONTEXT -> ACQUIRING_MIC -> CAPTURING -> ANALYZING -> DONE

Every failure along the way ends the attempt with a SyncFailure carrying a
FailureReason; nothing is retried internally. Resources taken during the
attempt (microphone stream, tap connections) are released before the outcome
is returned, whichever way the attempt ends.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, ClassVar

import numpy as np

from lyricsync.audio import (
    AudioContext,
    ContextProvider,
    ContextState,
    MicrophoneConstraints,
    MicrophoneSource,
    MicrophoneStream,
    ProcessorRegistry,
    TapNode,
    default_registry,
)
from lyricsync.batcher import DEFAULT_BATCH_SIZE
from lyricsync.capture import CapturedPair, DualCaptureCoordinator
from lyricsync.dsp import (
    DEFAULT_MIN_OVERLAP_RATIO,
    compute_envelope,
    cross_correlate,
    lag_to_offset,
    max_lag_frames,
    normalize,
    rms,
)
from lyricsync.errors import (
    AudioNotReadyError,
    AutoSyncError,
    FailureReason,
    LowSignalError,
    MicrophoneUnavailableError,
    NoCorrelationError,
    SyncInProgressError,
)

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    """User-facing progress reported through AutoSyncConfig.on_phase."""

    LISTENING = "listening"
    """Capture is about to start."""

    PROCESSING = "processing"
    """Both buffers are captured; analysis is about to start."""


class SyncState(Enum):
    """State machine for one auto-sync attempt."""

    IDLE = auto()
    """No attempt in flight."""

    ACQUIRING_CONTEXT = auto()
    """Waiting for the audio context to be reachable and running."""

    ACQUIRING_MIC = auto()
    """Waiting for the microphone stream."""

    CAPTURING = auto()
    """Recording the program and microphone signals."""

    ANALYZING = auto()
    """Extracting envelopes and estimating the lag."""

    DONE = auto()
    """Outcome decided; resources released."""


@dataclass
class AutoSyncConfig:
    """Configuration for one auto-sync attempt.

    Attributes:
        duration_ms: Length of the capture window.
        max_lag_seconds: Largest delay searched for, in either direction.
        correlation_threshold: Minimum correlation accepted as a match (0-1).
        frame_size: Envelope frame length in samples.
        hop_size: Samples between envelope frames.
        min_rms: Minimum RMS energy each captured buffer must reach.
            Deployments tune this between 0.0005 and 0.01.
        offset_min: Lower bound of the reported offset in seconds.
        offset_max: Upper bound of the reported offset in seconds.
        capture_timeout_padding_ms: Grace period past duration_ms before a
            capture session is considered stalled.
        context_timeout_s: How long to wait for the audio context.
        mic_timeout_s: How long to wait for the microphone stream.
        batch_size: Samples per batch handed from the audio thread.
        min_overlap_ratio: Share of the shorter envelope that must overlap at
            every searched lag; narrows the lag range on short captures.
        force_envelope_frame: Produce one envelope frame for buffers shorter
            than frame_size instead of an empty envelope.
        mic_constraints: Processing requested from the microphone.
        on_phase: Called with LISTENING and PROCESSING as the attempt advances.
    """

    duration_ms: float = 1500.0
    max_lag_seconds: float = 2.0
    correlation_threshold: float = 0.2
    frame_size: int = 1024
    hop_size: int = 256
    min_rms: float = 0.001
    offset_min: float = -5.0
    offset_max: float = 15.0
    capture_timeout_padding_ms: float = 1000.0
    context_timeout_s: float = 3.0
    mic_timeout_s: float = 10.0
    batch_size: int = DEFAULT_BATCH_SIZE
    min_overlap_ratio: float = DEFAULT_MIN_OVERLAP_RATIO
    force_envelope_frame: bool = False
    mic_constraints: MicrophoneConstraints = field(default_factory=MicrophoneConstraints)
    on_phase: Callable[[SyncPhase], None] | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        """Validate field ranges."""
        if self.duration_ms <= 0:
            raise ValueError(f"duration_ms must be positive, got {self.duration_ms}")
        if self.max_lag_seconds < 0:
            raise ValueError(f"max_lag_seconds must be >= 0, got {self.max_lag_seconds}")
        if not 0.0 <= self.correlation_threshold <= 1.0:
            raise ValueError(
                f"correlation_threshold must be within [0, 1], got {self.correlation_threshold}"
            )
        if self.frame_size <= 0 or self.hop_size <= 0:
            raise ValueError("frame_size and hop_size must be positive")
        if self.min_rms < 0:
            raise ValueError(f"min_rms must be >= 0, got {self.min_rms}")
        if self.offset_min > self.offset_max:
            raise ValueError(
                f"offset_min ({self.offset_min}) must not exceed offset_max ({self.offset_max})"
            )
        if self.capture_timeout_padding_ms < 0:
            raise ValueError("capture_timeout_padding_ms must be >= 0")
        if self.context_timeout_s <= 0 or self.mic_timeout_s <= 0:
            raise ValueError("context_timeout_s and mic_timeout_s must be positive")
        if not 0.0 <= self.min_overlap_ratio <= 1.0:
            raise ValueError(
                f"min_overlap_ratio must be within [0, 1], got {self.min_overlap_ratio}"
            )
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")


@dataclass(frozen=True, slots=True)
class SyncSuccess:
    """Detected lyrics offset.

    Attributes:
        offset_seconds: Offset to apply to the lyrics, clamped to the
            configured range. Positive delays the lyrics.
        correlation: Correlation at the chosen lag.
        diagnostics: Measurements taken during analysis.
    """

    ok: ClassVar[bool] = True

    offset_seconds: float
    correlation: float
    diagnostics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SyncFailure:
    """An attempt that ended without an offset.

    Attributes:
        reason: Machine-readable failure kind.
        message: Human-readable explanation.
        diagnostics: Measurements available when the attempt failed.
    """

    ok: ClassVar[bool] = False

    reason: FailureReason
    message: str
    diagnostics: dict[str, Any] = field(default_factory=dict)


SyncOutcome = SyncSuccess | SyncFailure


@dataclass
class SyncAttempt:
    """Transient state of one end-to-end run."""

    config: AutoSyncConfig
    state: SyncState = SyncState.IDLE
    phases: set[SyncPhase] = field(default_factory=set)
    captured: CapturedPair | None = None
    outcome: SyncOutcome | None = None


def analyze_capture(
    stream: np.ndarray,
    mic: np.ndarray,
    sample_rate: int,
    config: AutoSyncConfig,
) -> SyncSuccess:
    """Estimate the lyrics offset from a captured program/microphone pair.

    Applies the signal gate (both buffers above config.min_rms) and the
    correlation gate (best correlation at least config.correlation_threshold).

    Raises:
        LowSignalError: A buffer is empty or too quiet.
        NoCorrelationError: The envelopes do not line up reliably.
    """
    if len(stream) == 0 or len(mic) == 0:
        raise LowSignalError(
            "No audio was captured.",
            sample_rate=sample_rate,
            stream_samples=len(stream),
            mic_samples=len(mic),
        )

    stream_rms = rms(stream)
    mic_rms = rms(mic)
    stream_quiet = stream_rms < config.min_rms
    mic_quiet = mic_rms < config.min_rms
    if stream_quiet or mic_quiet:
        if stream_quiet and mic_quiet:
            message = "Couldn't detect any audio. Make sure music is playing through speakers."
            quiet = "both"
        elif stream_quiet:
            message = "No music is playing. Start playback and try again."
            quiet = "stream"
        else:
            message = (
                "Couldn't hear the music through the microphone. "
                "Make sure it is playing through speakers and the microphone is not muted."
            )
            quiet = "mic"
        raise LowSignalError(
            message,
            quiet=quiet,
            stream_rms=stream_rms,
            mic_rms=mic_rms,
            min_rms=config.min_rms,
            sample_rate=sample_rate,
        )

    stream_env = normalize(
        compute_envelope(
            stream, config.frame_size, config.hop_size, force_frame=config.force_envelope_frame
        )
    )
    mic_env = normalize(
        compute_envelope(
            mic, config.frame_size, config.hop_size, force_frame=config.force_envelope_frame
        )
    )
    available = min(len(stream_env), len(mic_env))
    if available == 0:
        raise NoCorrelationError(
            "The captured audio is too short to align.",
            stream_samples=len(stream),
            mic_samples=len(mic),
            frame_size=config.frame_size,
            sample_rate=sample_rate,
        )

    max_lag = max_lag_frames(
        config.max_lag_seconds,
        sample_rate,
        config.hop_size,
        available,
        config.min_overlap_ratio,
    )
    estimate = cross_correlate(stream_env, mic_env, max_lag)
    diagnostics: dict[str, Any] = {
        "sample_rate": sample_rate,
        "stream_rms": stream_rms,
        "mic_rms": mic_rms,
        "lag": estimate.lag,
        "max_lag": max_lag,
        "correlation": estimate.correlation,
        "raw_offset_seconds": estimate.lag * config.hop_size / sample_rate,
    }
    logger.debug(
        "Best lag %d frames (max %d), correlation %.3f", estimate.lag, max_lag, estimate.correlation
    )

    if estimate.correlation < config.correlation_threshold:
        raise NoCorrelationError(
            "Couldn't reliably detect the delay. Try with louder playback.",
            threshold=config.correlation_threshold,
            **diagnostics,
        )

    offset = lag_to_offset(
        estimate.lag, config.hop_size, sample_rate, config.offset_min, config.offset_max
    )
    return SyncSuccess(
        offset_seconds=offset, correlation=estimate.correlation, diagnostics=diagnostics
    )


class AutoSyncOrchestrator:
    """Runs auto-sync attempts against one host audio setup.

    Attempts are independent: nothing carries over from one run() to the
    next. Only one attempt may be in flight at a time.
    """

    def __init__(
        self,
        context: AudioContext | ContextProvider | None,
        program_tap: TapNode,
        microphone: MicrophoneSource,
        registry: ProcessorRegistry | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            context: The host audio context, or an async callable returning it
                once the host has built its audio graph.
            program_tap: Tap carrying the program audio.
            microphone: Source of microphone streams.
            registry: Capture processor registry shared by everything that
                uses the same audio context. Defaults to the module-wide
                default_registry.
        """
        self._context_source = context
        self._program_tap = program_tap
        self._microphone = microphone
        self._registry = registry if registry is not None else default_registry
        self._attempt: SyncAttempt | None = None

    @property
    def state(self) -> SyncState:
        """State of the attempt in flight, IDLE when there is none."""
        return self._attempt.state if self._attempt is not None else SyncState.IDLE

    @property
    def running(self) -> bool:
        """Whether an attempt is in flight."""
        return self._attempt is not None

    async def run(self, config: AutoSyncConfig | None = None) -> SyncOutcome:
        """Run one auto-sync attempt.

        Returns:
            SyncSuccess with the clamped offset, or SyncFailure.

        Raises:
            SyncInProgressError: Another attempt is still running.
        """
        if self._attempt is not None:
            raise SyncInProgressError("An auto-sync attempt is already running")
        attempt = SyncAttempt(config=config or AutoSyncConfig())
        self._attempt = attempt
        try:
            try:
                outcome: SyncOutcome = await self._run_attempt(attempt)
            except AutoSyncError as err:
                outcome = SyncFailure(
                    reason=err.reason, message=err.message, diagnostics=err.diagnostics
                )
            attempt.outcome = outcome
            self._set_state(attempt, SyncState.DONE)
            self._log_outcome(outcome)
            return outcome
        finally:
            self._attempt = None

    async def _run_attempt(self, attempt: SyncAttempt) -> SyncSuccess:
        config = attempt.config

        self._set_state(attempt, SyncState.ACQUIRING_CONTEXT)
        context = await self._acquire_context(config)

        async with contextlib.AsyncExitStack() as stack:
            self._set_state(attempt, SyncState.ACQUIRING_MIC)
            mic_stream = await self._acquire_microphone(context, config)
            stack.callback(_stop_microphone, mic_stream)

            await self._registry.ensure_registered(context)

            self._set_state(attempt, SyncState.CAPTURING)
            self._emit_phase(attempt, SyncPhase.LISTENING)
            coordinator = DualCaptureCoordinator(
                context,
                self._program_tap,
                mic_stream.tap,
                duration_ms=config.duration_ms,
                timeout_padding_ms=config.capture_timeout_padding_ms,
                batch_size=config.batch_size,
                registry=self._registry,
            )
            attempt.captured = await coordinator.capture()

        self._set_state(attempt, SyncState.ANALYZING)
        self._emit_phase(attempt, SyncPhase.PROCESSING)
        captured = attempt.captured
        return analyze_capture(captured.stream, captured.mic, captured.sample_rate, config)

    async def _acquire_context(self, config: AutoSyncConfig) -> AudioContext:
        """Resolve the audio context and make sure it is running."""
        source = self._context_source
        context: AudioContext | None
        try:
            if source is None or hasattr(source, "sample_rate"):
                context = source  # type: ignore[assignment]
            else:
                context = await asyncio.wait_for(source(), timeout=config.context_timeout_s)
        except TimeoutError:
            raise AudioNotReadyError(
                "Audio is still initializing. Start playback and try again.",
                timeout_s=config.context_timeout_s,
            ) from None
        except Exception as err:
            raise AudioNotReadyError(
                "Audio context is not available.", error=repr(err)
            ) from err

        if context is None or context.state == ContextState.CLOSED:
            raise AudioNotReadyError("Audio context is not available.")

        if context.state == ContextState.SUSPENDED:
            logger.debug("Resuming suspended audio context")
            try:
                await asyncio.wait_for(context.resume(), timeout=config.context_timeout_s)
            except TimeoutError:
                raise AudioNotReadyError(
                    "Audio context did not resume in time.",
                    timeout_s=config.context_timeout_s,
                    sample_rate=context.sample_rate,
                ) from None
            except Exception as err:
                raise AudioNotReadyError(
                    "Audio context could not be resumed.",
                    error=repr(err),
                    sample_rate=context.sample_rate,
                ) from err
            if context.state == ContextState.CLOSED:
                raise AudioNotReadyError("Audio context is not available.")

        return context

    async def _acquire_microphone(
        self, context: AudioContext, config: AutoSyncConfig
    ) -> MicrophoneStream:
        try:
            return await asyncio.wait_for(
                self._microphone.acquire(context, config.mic_constraints),
                timeout=config.mic_timeout_s,
            )
        except MicrophoneUnavailableError:
            raise
        except TimeoutError:
            raise MicrophoneUnavailableError(
                "Timed out waiting for microphone access.", timeout_s=config.mic_timeout_s
            ) from None
        except Exception as err:
            raise MicrophoneUnavailableError(
                "Microphone access was denied.", error=repr(err)
            ) from err

    def _set_state(self, attempt: SyncAttempt, state: SyncState) -> None:
        logger.debug("Auto-sync state: %s -> %s", attempt.state.name, state.name)
        attempt.state = state

    def _emit_phase(self, attempt: SyncAttempt, phase: SyncPhase) -> None:
        if phase in attempt.phases:
            return
        attempt.phases.add(phase)
        callback = attempt.config.on_phase
        if callback is None:
            return
        try:
            callback(phase)
        except Exception:
            logger.exception("Error in auto-sync phase callback")

    def _log_outcome(self, outcome: SyncOutcome) -> None:
        if isinstance(outcome, SyncSuccess):
            logger.info(
                "Auto-sync detected offset %+.1fs (correlation %.2f)",
                outcome.offset_seconds,
                outcome.correlation,
            )
        else:
            logger.info(
                "Auto-sync failed (%s): %s %s",
                outcome.reason.value,
                outcome.message,
                outcome.diagnostics,
            )


def _stop_microphone(stream: MicrophoneStream) -> None:
    try:
        stream.stop()
    except Exception:
        logger.exception("Failed to stop microphone stream")


async def run_auto_sync(
    context: AudioContext | ContextProvider | None,
    program_tap: TapNode,
    microphone: MicrophoneSource,
    config: AutoSyncConfig | None = None,
    *,
    registry: ProcessorRegistry | None = None,
) -> SyncOutcome:
    """Run a single auto-sync attempt.

    Convenience wrapper around AutoSyncOrchestrator for one-off use.
    """
    orchestrator = AutoSyncOrchestrator(context, program_tap, microphone, registry=registry)
    return await orchestrator.run(config)
