from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Optional, Set

logger = logging.getLogger("quizgame.tasks")

# Strong references to detached tasks so they are not garbage collected mid-flight.
_background_tasks: Set[asyncio.Task] = set()


def now_ts() -> float:
    return time.time()


def now_ms() -> int:
    return int(time.time() * 1000)


def new_game_instance_id() -> str:
    return uuid.uuid4().hex


def average(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def spawn(coro: Awaitable[Any], *, name: str) -> asyncio.Task:
    """Schedule ``coro`` as a tracked background task."""

    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def fire_and_forget(coro: Awaitable[Any], *, name: str, **log_fields: Any) -> asyncio.Task:
    """Run ``coro`` detached; failures are logged and never reach the caller."""

    async def _runner() -> Optional[Any]:
        try:
            return await coro
        except Exception:
            logger.warning("background_task_failed", exc_info=True, extra={"task": name, **log_fields})
            return None

    return spawn(_runner(), name=name)


async def drain_background_tasks() -> None:
    """Wait until every tracked background task has settled."""

    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
