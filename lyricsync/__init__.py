"""Automatic lyrics-offset detection from program audio and a microphone."""

from lyricsync.audio import (
    AudioContext,
    ContextState,
    MicrophoneConstraints,
    ProcessorRegistry,
    TapNode,
    default_registry,
)
from lyricsync.errors import AutoSyncError, FailureReason, SyncInProgressError
from lyricsync.sync import (
    AutoSyncConfig,
    AutoSyncOrchestrator,
    SyncFailure,
    SyncOutcome,
    SyncPhase,
    SyncState,
    SyncSuccess,
    analyze_capture,
    run_auto_sync,
)

__all__ = [
    "AudioContext",
    "AutoSyncConfig",
    "AutoSyncError",
    "AutoSyncOrchestrator",
    "ContextState",
    "FailureReason",
    "MicrophoneConstraints",
    "ProcessorRegistry",
    "SyncFailure",
    "SyncInProgressError",
    "SyncOutcome",
    "SyncPhase",
    "SyncState",
    "SyncSuccess",
    "TapNode",
    "analyze_capture",
    "default_registry",
    "run_auto_sync",
]
