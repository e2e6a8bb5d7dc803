from __future__ import annotations

import logging
import random
from typing import Any, Iterable, List, Optional

from .db import db, settings
from .errors import QuestionFetchError
from .models import Answer, Question

logger = logging.getLogger("quizgame.questions")

ANSWER_KEYS = ("A", "B", "C")
MAX_SAME_POSITION = 2


def relabel(question: Question, order: List[Answer]) -> Question:
    answers = [Answer(key=key, text=a.text, correct=a.correct) for key, a in zip(ANSWER_KEYS, order)]
    return question.model_copy(update={"answers": answers})


def shuffle_answers(questions: Iterable[Question], rng: random.Random) -> List[Question]:
    """Shuffle answer order per question, avoiding long runs of the same correct key."""

    last_correct = -1
    run = 0
    shuffled: List[Question] = []
    for q in questions:
        order = list(q.answers)
        rng.shuffle(order)
        attempts = 0
        while run >= MAX_SAME_POSITION and _correct_position(order) == last_correct and attempts < 10:
            rng.shuffle(order)
            attempts += 1

        position = _correct_position(order)
        if position == last_correct:
            run += 1
        else:
            last_correct, run = position, 1
        shuffled.append(relabel(q, order))
    return shuffled


def _correct_position(answers: List[Answer]) -> int:
    return next(i for i, a in enumerate(answers) if a.correct)


class QuestionBank:
    """Source of question sets. Selection is plain random sampling per language."""

    def __init__(self, database: Any = None, rng: Optional[random.Random] = None, per_game: Optional[int] = None):
        self.db = database or db
        self.rng = rng or random.Random()
        self.per_game = per_game or settings.QUESTIONS_PER_GAME

    async def upsert(self, questions: List[Question], lang: str = "en") -> int:
        for q in questions:
            await self.db.questions.update_one(
                {"id": q.id},
                {"$set": {**q.model_dump(), "lang": lang}},
                upsert=True,
            )
        return len(questions)

    async def _load(self, lang: str, exclude_ids: Iterable[str] = ()) -> List[Question]:
        query: dict[str, Any] = {"lang": lang}
        exclude = list(exclude_ids)
        if exclude:
            query["id"] = {"$nin": exclude}
        docs = await self.db.questions.find(query).to_list()
        return [Question(**{k: v for k, v in doc.items() if k != "lang"}) for doc in docs]

    async def fetch_question_set(self, lang: str = "en") -> List[Question]:
        pool = await self._load(lang)
        if len(pool) < self.per_game:
            logger.error("question_pool_too_small", extra={"context": lang})
            raise QuestionFetchError(
                "Not enough questions to start a game",
                details={"lang": lang, "available": len(pool), "required": self.per_game},
            )
        picked = self.rng.sample(pool, self.per_game)
        return shuffle_answers(picked, self.rng)

    async def fetch_replacement(self, lang: str, exclude_ids: Iterable[str]) -> Question:
        pool = await self._load(lang, exclude_ids)
        if not pool:
            raise QuestionFetchError("No replacement question available", details={"lang": lang})
        return shuffle_answers([self.rng.choice(pool)], self.rng)[0]


question_bank = QuestionBank()
