"""Envelope extraction and lag estimation.

The two captured signals can differ by orders of magnitude in raw level, so
they are compared as standardized RMS envelopes: each buffer is reduced to one
energy value per overlapping frame, the envelope is normalized to zero mean
and unit variance, and the two envelopes are cross-correlated over a bounded
range of lags.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Final

import numpy as np

from lyricsync.utils import clamp

logger = logging.getLogger(__name__)

NORMALIZE_EPSILON: Final[float] = 1e-10
"""Standard deviation at or below which an envelope is treated as flat."""

DEFAULT_MIN_OVERLAP_RATIO: Final[float] = 0.5
"""Share of the shorter envelope that must overlap at every searched lag.

Lags overlapping by only a few frames score near-random correlations well
above the acceptance threshold.
"""


@dataclass(frozen=True, slots=True)
class LagEstimate:
    """Best alignment found by cross_correlate().

    Attributes:
        lag: Envelope frames by which b trails a. Positive means the
            microphone heard the music later than the program played it.
        correlation: Mean product of the normalized envelopes at that lag.
    """

    lag: int
    correlation: float


def rms(buffer: np.ndarray) -> float:
    """Root-mean-square energy of a buffer; 0.0 when empty."""
    if len(buffer) == 0:
        return 0.0
    data = np.asarray(buffer, dtype=np.float64)
    return float(np.sqrt(np.mean(data * data)))


def envelope_length(length: int, frame_size: int, hop_size: int) -> int:
    """Number of full frames of frame_size, hop_size apart, in length samples."""
    if length < frame_size:
        return 0
    return (length - frame_size) // hop_size + 1


def compute_envelope(
    buffer: np.ndarray,
    frame_size: int,
    hop_size: int,
    *,
    force_frame: bool = False,
) -> np.ndarray:
    """Compute the RMS envelope of a buffer.

    Frame i covers buffer[i * hop_size : i * hop_size + frame_size]; only
    frames lying entirely inside the buffer are produced. A buffer shorter
    than one frame yields an empty envelope, or, with force_frame, a single
    value holding the RMS of the whole buffer.

    Args:
        buffer: Mono PCM samples.
        frame_size: Samples per frame.
        hop_size: Samples between consecutive frame starts.
        force_frame: Emit one frame for non-empty buffers shorter than a frame.

    Returns:
        float64 array of non-negative energies.
    """
    if frame_size <= 0 or hop_size <= 0:
        raise ValueError(
            f"frame_size and hop_size must be positive, got {frame_size} and {hop_size}"
        )
    data = np.asarray(buffer, dtype=np.float64)
    num_frames = envelope_length(len(data), frame_size, hop_size)
    if num_frames == 0:
        if force_frame and len(data) > 0:
            return np.array([rms(data)], dtype=np.float64)
        return np.zeros(0, dtype=np.float64)

    # Sliding sum of squares via cumulative sum: O(L) regardless of overlap
    squares = np.concatenate(([0.0], np.cumsum(data * data)))
    starts = np.arange(num_frames) * hop_size
    energy = (squares[starts + frame_size] - squares[starts]) / frame_size
    # Cumulative sums can leave tiny negative residues on silent frames
    return np.sqrt(np.maximum(energy, 0.0))


def normalize(envelope: np.ndarray) -> np.ndarray:
    """Standardize an envelope to zero mean and unit population variance.

    A flat envelope (std at or below NORMALIZE_EPSILON) becomes all zeros.
    An empty envelope is returned empty.
    """
    data = np.asarray(envelope, dtype=np.float64)
    if len(data) == 0:
        return np.zeros(0, dtype=np.float64)
    centered = data - np.mean(data)
    std = float(np.sqrt(np.mean(centered * centered)))
    if std <= NORMALIZE_EPSILON:
        return np.zeros_like(centered)
    return centered / std


def max_lag_frames(
    max_lag_seconds: float,
    sample_rate: int,
    hop_size: int,
    available_frames: int,
    min_overlap_ratio: float = DEFAULT_MIN_OVERLAP_RATIO,
) -> int:
    """Convert a maximum expected delay to a lag bound in envelope frames.

    Every searched lag must keep at least ceil(available_frames *
    min_overlap_ratio) overlapping frames, and never fewer than one, so the
    bound never exceeds available_frames - 1.

    Args:
        max_lag_seconds: Largest delay to search for.
        sample_rate: Sample rate of the captured buffers in Hz.
        hop_size: Samples between envelope frames.
        available_frames: Length of the shorter envelope.
        min_overlap_ratio: Share of available_frames that must overlap at
            the outermost lag (0 keeps a single frame).

    Returns:
        Non-negative lag bound in frames.
    """
    requested = round(max_lag_seconds * sample_rate / hop_size)
    min_overlap = max(1, math.ceil(available_frames * min_overlap_ratio))
    capped = max(0, min(requested, available_frames - min_overlap))
    if capped < requested:
        logger.debug(
            "Lag bound reduced from %d to %d frames (envelope length %d, min overlap %d)",
            requested,
            capped,
            available_frames,
            min_overlap,
        )
    return capped


def cross_correlate(a: np.ndarray, b: np.ndarray, max_lag: int) -> LagEstimate:
    """Find the lag in [-max_lag, max_lag] maximizing the mean product of a and b.

    For lag k the score is the mean of a[i] * b[i + k] over every i where both
    indices are valid; lags without overlap are skipped. Lags are scanned in
    ascending order and only a strictly greater score replaces the current
    best, so ties resolve to the most negative lag.

    Returns:
        The best LagEstimate, or LagEstimate(0, -inf) when no lag overlaps.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    len_a = len(a)
    len_b = len(b)

    best_lag = 0
    best_corr = -math.inf
    for lag in range(-max_lag, max_lag + 1):
        start = max(0, -lag)
        end = min(len_a, len_b - lag)
        if end <= start:
            continue
        corr = float(np.dot(a[start:end], b[start + lag : end + lag])) / (end - start)
        if corr > best_corr:
            best_corr = corr
            best_lag = lag

    return LagEstimate(lag=best_lag, correlation=best_corr)


def lag_to_offset(
    lag: int,
    hop_size: int,
    sample_rate: int,
    offset_min: float,
    offset_max: float,
) -> float:
    """Convert a lag in envelope frames to a lyrics offset in seconds.

    The offset is rounded to one decimal and always clamped to
    [offset_min, offset_max].
    """
    seconds = lag * hop_size / sample_rate
    return clamp(round(seconds, 1), offset_min, offset_max)
