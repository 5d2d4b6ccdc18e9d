"""
Clock and timer abstraction used by every periodic producer.

The capture engine and the session channel never touch ``asyncio`` timers
directly; they schedule through a :class:`Scheduler` so tests can drive time
by hand.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Millisecond clock plus one-shot timers."""

    def now(self) -> float:
        ...

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class AsyncioScheduler:
    """Scheduler bound to an asyncio event loop.

    Args:
        loop: Loop to schedule on. When omitted the running loop is looked up
            on every call, so the scheduler can be built outside the loop.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def now(self) -> float:
        return self._get_loop().time() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        return self._get_loop().call_later(max(0.0, delay_ms) / 1000.0, callback)
