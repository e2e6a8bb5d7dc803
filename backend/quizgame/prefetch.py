from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .models import Question
from .questions import QuestionBank, question_bank
from .utils import spawn

logger = logging.getLogger("quizgame.prefetch")


class PrefetchCache:
    """Single slot holding the next game's question set; last write wins."""

    def __init__(self, bank: Optional[QuestionBank] = None):
        self.bank = bank or question_bank
        self._slot: Optional[List[Question]] = None
        self._in_flight: Optional[asyncio.Task] = None

    @property
    def populated(self) -> bool:
        return bool(self._slot)

    def trigger(self, lang: str) -> asyncio.Task:
        if self._in_flight is not None and not self._in_flight.done():
            return self._in_flight
        self._in_flight = spawn(self._fetch(lang), name="prefetch")
        return self._in_flight

    async def _fetch(self, lang: str) -> None:
        try:
            questions = await self.bank.fetch_question_set(lang)
        except Exception:
            logger.warning("prefetch_failed", exc_info=True, extra={"context": lang})
            return
        self._slot = questions
        logger.info("prefetch_stored", extra={"context": lang})

    def store(self, questions: List[Question]) -> None:
        self._slot = list(questions)

    def consume(self) -> Optional[List[Question]]:
        questions, self._slot = self._slot, None
        return questions

    def clear(self) -> None:
        self._slot = None
        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.cancel()
        self._in_flight = None
