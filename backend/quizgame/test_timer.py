from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase, mock

from .timer import QuestionTimer, SwipeGate
from .utils import drain_background_tasks


class SwipeGateTests(IsolatedAsyncioTestCase):
    async def test_second_swipe_rejected_while_one_is_in_flight(self):
        gate = SwipeGate(cooldown=0)

        self.assertTrue(gate.try_acquire())
        self.assertFalse(gate.try_acquire())

        gate.release()
        self.assertTrue(gate.try_acquire())

    async def test_gate_reopens_only_after_cooldown(self):
        gate = SwipeGate(cooldown=0.05)
        gate.try_acquire()

        gate.release()
        self.assertFalse(gate.try_acquire())
        await asyncio.sleep(0.01)
        self.assertFalse(gate.try_acquire())

        await asyncio.sleep(0.1)
        self.assertTrue(gate.try_acquire())


class QuestionTimerTests(IsolatedAsyncioTestCase):
    async def test_expiry_runs_once_after_countdown(self):
        on_expire = mock.AsyncMock()
        ticks = []
        timer = QuestionTimer(3, on_expire, tick_seconds=0, on_tick=ticks.append).start()

        while timer.running:
            await asyncio.sleep(0)
        await drain_background_tasks()

        self.assertTrue(timer.expired)
        self.assertEqual(ticks, [2, 1, 0])
        on_expire.assert_awaited_once()

    async def test_cancelled_timer_never_expires(self):
        on_expire = mock.AsyncMock()
        timer = QuestionTimer(3, on_expire, tick_seconds=60).start()

        timer.cancel()
        await drain_background_tasks()

        self.assertFalse(timer.running)
        self.assertFalse(timer.expired)
        on_expire.assert_not_awaited()
