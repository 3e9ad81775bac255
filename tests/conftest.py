from collections.abc import Callable, Coroutine, Iterator
from typing import Any

import pytest


class _ManualTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by the test: timers fire on advance(), coroutines on drain()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[_ManualTimer] = []
        self.spawned: list[Coroutine[Any, Any, Any]] = []

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self.now + delay_seconds, callback)
        self.timers.append(timer)
        return timer

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        self.spawned.append(coro)

    def pending_timers(self) -> list[_ManualTimer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = sorted(
            (timer for timer in self.pending_timers() if timer.due <= self.now + 1e-9),
            key=lambda timer: timer.due,
        )
        for timer in due:
            self.timers.remove(timer)
            if not timer.cancelled:
                timer.callback()

    async def drain(self) -> None:
        while self.spawned:
            await self.spawned.pop(0)

    def close(self) -> None:
        for coro in self.spawned:
            coro.close()
        self.spawned.clear()


@pytest.fixture
def scheduler() -> Iterator[ManualScheduler]:
    manual = ManualScheduler()
    yield manual
    manual.close()
