from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .utils import spawn

logger = logging.getLogger("quizgame.timer")


class QuestionTimer:
    """Countdown for a single question, ticking once per ``tick_seconds``.

    When it reaches zero the expiry callback is scheduled as its own task, so
    the callback may freely cancel or replace this timer.
    """

    def __init__(
        self,
        seconds: int,
        on_expire: Callable[[], Awaitable[None]],
        tick_seconds: float = 1.0,
        on_tick: Optional[Callable[[int], None]] = None,
    ):
        self.seconds = seconds
        self.remaining = seconds
        self.tick_seconds = tick_seconds
        self.on_expire = on_expire
        self.on_tick = on_tick
        self.expired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "QuestionTimer":
        self.cancel()
        self.remaining = self.seconds
        self.expired = False
        self._task = asyncio.ensure_future(self._run())
        return self

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while self.remaining > 0:
            await asyncio.sleep(self.tick_seconds)
            self.remaining -= 1
            if self.on_tick is not None:
                self.on_tick(self.remaining)
        self.expired = True
        spawn(self.on_expire(), name="question_timeout")


class SwipeGate:
    """Serializes swipe gestures.

    A swipe is accepted only when none is in flight; after the in-flight swipe
    settles the gate stays closed for ``cooldown`` seconds more.
    """

    def __init__(self, cooldown: float = 0.1):
        self.cooldown = cooldown
        self.in_progress = False

    def try_acquire(self) -> bool:
        if self.in_progress:
            return False
        self.in_progress = True
        return True

    def release(self) -> None:
        if self.cooldown <= 0:
            self.in_progress = False
            return
        asyncio.get_running_loop().call_later(self.cooldown, self._reopen)

    def _reopen(self) -> None:
        self.in_progress = False
