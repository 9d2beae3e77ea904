"""Typed failures for an auto-sync attempt.

Every failure carries a FailureReason (the machine-readable kind reported to
the caller) and a diagnostics mapping with whatever measurements were at hand
when it happened (sample rate, RMS levels, chosen lag, correlation).
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureReason(str, Enum):
    """Kinds of failure an auto-sync attempt can end with."""

    AUDIO_NOT_READY = "audio-not-ready"
    """Audio context missing, closed, or not reachable in time."""

    MIC_DENIED = "mic-denied"
    """Microphone permission refused or device unavailable."""

    CAPTURE_UNSUPPORTED = "capture-unsupported"
    """The capture processor could not be registered on the context."""

    CAPTURE_TIMEOUT = "capture-timeout"
    """A capture session did not collect its samples before its deadline."""

    LOW_SIGNAL = "low-signal"
    """Program or microphone buffer is too quiet to analyze."""

    NO_CORRELATION = "no-correlation"
    """Best cross-correlation is below the acceptance threshold."""


class AutoSyncError(Exception):
    """Base class for typed auto-sync failures."""

    reason: FailureReason

    def __init__(self, message: str, **diagnostics: Any) -> None:
        """Initialize the error.

        Args:
            message: Human-readable description of what went wrong.
            **diagnostics: Structured fields useful for logging or display.
        """
        super().__init__(message)
        self.message = message
        self.diagnostics: dict[str, Any] = diagnostics


class AudioNotReadyError(AutoSyncError):
    """Raised when the audio context cannot be used."""

    reason = FailureReason.AUDIO_NOT_READY


class MicrophoneUnavailableError(AutoSyncError):
    """Raised when the microphone stream cannot be opened."""

    reason = FailureReason.MIC_DENIED


class CaptureUnsupportedError(AutoSyncError):
    """Raised when the capture processor cannot be registered."""

    reason = FailureReason.CAPTURE_UNSUPPORTED


class CaptureTimeoutError(AutoSyncError):
    """Raised when a capture session misses its deadline."""

    reason = FailureReason.CAPTURE_TIMEOUT


class LowSignalError(AutoSyncError):
    """Raised when a captured buffer is below the minimum RMS energy."""

    reason = FailureReason.LOW_SIGNAL


class NoCorrelationError(AutoSyncError):
    """Raised when the two envelopes cannot be aligned reliably."""

    reason = FailureReason.NO_CORRELATION


class SyncInProgressError(RuntimeError):
    """Raised when a sync is requested while another one is still running."""
