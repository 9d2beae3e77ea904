"""Command-line entry point for lyricsync.

Runs one auto-sync attempt using a loopback/monitor input device as the
program tap and a microphone, then prints the detected offset.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from lyricsync.audio import (
    InputDeviceTap,
    MicrophoneConstraints,
    SoundDeviceContext,
    SoundDeviceMicrophone,
    query_input_devices,
)
from lyricsync.sync import AutoSyncConfig, SyncPhase, SyncSuccess, run_auto_sync

logger = logging.getLogger(__name__)


def _parse_device(value: str) -> int | str:
    """Accept a device index or a device name."""
    try:
        return int(value)
    except ValueError:
        return value


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lyricsync",
        description="Detect the lyrics offset between program audio and what the microphone hears.",
    )
    parser.add_argument(
        "--list-devices", action="store_true", help="List audio input devices and exit"
    )
    parser.add_argument(
        "--program-device",
        type=_parse_device,
        help="Loopback or monitor input carrying the program audio (index or name)",
    )
    parser.add_argument(
        "--mic-device", type=_parse_device, default=None, help="Microphone (index or name)"
    )
    parser.add_argument("--sample-rate", type=int, default=48_000, help="Sample rate in Hz")
    parser.add_argument(
        "--duration-ms", type=float, default=1500.0, help="Capture window in milliseconds"
    )
    parser.add_argument(
        "--max-lag", type=float, default=2.0, help="Largest delay searched for, in seconds"
    )
    parser.add_argument(
        "--threshold", type=float, default=0.2, help="Minimum correlation accepted (0-1)"
    )
    parser.add_argument(
        "--min-rms", type=float, default=0.001, help="Minimum RMS energy of each signal"
    )
    parser.add_argument(
        "--echo-cancellation",
        action="store_true",
        help="Request echo cancellation and noise suppression on the microphone",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )
    return parser


def list_devices() -> None:
    """Print available input devices."""
    for device in query_input_devices():
        marker = "*" if device.is_default else " "
        print(  # noqa: T201
            f"{marker} {device.index:3d}  {device.name}  "
            f"({device.input_channels} ch, {device.sample_rate:.0f} Hz)"
        )


def _print_phase(phase: SyncPhase) -> None:
    if phase is SyncPhase.LISTENING:
        print("Listening...", flush=True)  # noqa: T201
    else:
        print("Processing...", flush=True)  # noqa: T201


async def run(args: argparse.Namespace) -> int:
    """Run a single auto-sync attempt from parsed arguments."""
    context = SoundDeviceContext(sample_rate=args.sample_rate)
    program_tap = InputDeviceTap(args.sample_rate, device=args.program_device)
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, program_tap.start)
    except Exception as err:
        logger.debug("Failed to open program device", exc_info=True)
        print(f"Could not open program device {args.program_device!r}: {err}")  # noqa: T201
        return 1

    config = AutoSyncConfig(
        duration_ms=args.duration_ms,
        max_lag_seconds=args.max_lag,
        correlation_threshold=args.threshold,
        min_rms=args.min_rms,
        mic_constraints=MicrophoneConstraints(
            echo_cancellation=args.echo_cancellation,
            noise_suppression=args.echo_cancellation,
            device=args.mic_device,
        ),
        on_phase=_print_phase,
    )
    try:
        outcome = await run_auto_sync(context, program_tap, SoundDeviceMicrophone(), config)
    finally:
        program_tap.stop()
        await context.close()

    if isinstance(outcome, SyncSuccess):
        print(  # noqa: T201
            f"offset={outcome.offset_seconds:+.1f}s correlation={outcome.correlation:.2f}"
        )
        return 0
    print(f"{outcome.reason.value}: {outcome.message}")  # noqa: T201
    return 1


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list_devices:
        list_devices()
        return 0
    if args.program_device is None:
        print("--program-device is required (see --list-devices)")  # noqa: T201
        return 2

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
