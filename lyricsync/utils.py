"""Small asyncio and numeric helpers shared across lyricsync."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Coroutine
from typing import Any, TypeVar

_T = TypeVar("_T")

# asyncio.create_task only grew eager_start in newer interpreters
_EAGER_START: dict[str, Any] = (
    {"eager_start": True}
    if "eager_start" in inspect.signature(asyncio.create_task).parameters
    else {}
)


def create_task(coro: Coroutine[Any, Any, _T], *, name: str) -> asyncio.Task[_T]:
    """Schedule coro as a named task, starting it eagerly where supported.

    An eager task runs up to its first suspension point before this returns,
    so capture sessions created back to back connect their taps without a
    loop iteration between them. Where eager start is unavailable the task
    is scheduled normally.
    """
    return asyncio.create_task(coro, name=name, **_EAGER_START)


def clamp(value: float, lower: float, upper: float) -> float:
    """Constrain value to the closed range [lower, upper]."""
    return max(lower, min(upper, value))
