from __future__ import annotations

import random
from unittest import IsolatedAsyncioTestCase, TestCase

from pydantic import ValidationError

from .db import InMemoryDatabase
from .errors import QuestionFetchError
from .models import Answer, Question
from .prefetch import PrefetchCache
from .questions import QuestionBank, shuffle_answers
from .utils import drain_background_tasks


def _question(i: int) -> Question:
    return Question(
        id=f"q{i}",
        question=f"Question {i}?",
        topic="general",
        answers=[
            Answer(key="A", text=f"right {i}", correct=True),
            Answer(key="B", text=f"wrong {i}"),
            Answer(key="C", text=f"other {i}"),
        ],
    )


class QuestionModelTests(TestCase):
    def test_exactly_one_correct_answer_is_required(self):
        with self.assertRaises(ValidationError):
            Question(
                id="bad",
                question="?",
                answers=[
                    Answer(key="A", text="a", correct=True),
                    Answer(key="B", text="b", correct=True),
                    Answer(key="C", text="c"),
                ],
            )
        with self.assertRaises(ValidationError):
            Question(id="bad", question="?", answers=[Answer(key=k, text=k) for k in "ABC"])

    def test_three_distinct_keys_are_required(self):
        with self.assertRaises(ValidationError):
            Question(
                id="bad",
                question="?",
                answers=[Answer(key="A", text="a", correct=True), Answer(key="B", text="b")],
            )
        with self.assertRaises(ValidationError):
            Question(
                id="bad",
                question="?",
                answers=[
                    Answer(key="A", text="a", correct=True),
                    Answer(key="A", text="b"),
                    Answer(key="C", text="c"),
                ],
            )

    def test_shuffle_keeps_one_correct_answer_and_limits_runs(self):
        shuffled = shuffle_answers([_question(i) for i in range(50)], random.Random(3))

        run, last = 0, None
        for q in shuffled:
            self.assertEqual([a.key for a in q.answers], ["A", "B", "C"])
            self.assertEqual(sum(a.correct for a in q.answers), 1)
            self.assertTrue(q.answers[["A", "B", "C"].index(q.correct_key)].text.startswith("right"))
            run = run + 1 if q.correct_key == last else 1
            last = q.correct_key
            self.assertLessEqual(run, 2)


class QuestionBankTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = InMemoryDatabase()
        self.bank = QuestionBank(self.db, random.Random(1), per_game=5)
        await self.bank.upsert([_question(i) for i in range(8)], lang="en")

    async def test_fetch_question_set_samples_per_game(self):
        questions = await self.bank.fetch_question_set("en")

        self.assertEqual(len(questions), 5)
        self.assertEqual(len({q.id for q in questions}), 5)

    async def test_pool_too_small_is_fatal(self):
        with self.assertRaises(QuestionFetchError):
            await self.bank.fetch_question_set("hu")

    async def test_replacement_excludes_current_set(self):
        exclude = [f"q{i}" for i in range(7)]

        replacement = await self.bank.fetch_replacement("en", exclude)

        self.assertEqual(replacement.id, "q7")

    async def test_replacement_with_empty_pool_raises(self):
        with self.assertRaises(QuestionFetchError):
            await self.bank.fetch_replacement("en", [f"q{i}" for i in range(8)])


class PrefetchCacheTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.bank = QuestionBank(InMemoryDatabase(), random.Random(2), per_game=3)
        await self.bank.upsert([_question(i) for i in range(4)])
        self.cache = PrefetchCache(self.bank)

    async def test_trigger_fills_slot_once_and_consume_clears_it(self):
        first = self.cache.trigger("en")
        second = self.cache.trigger("en")
        self.assertIs(first, second)
        await first

        self.assertTrue(self.cache.populated)
        questions = self.cache.consume()
        self.assertEqual(len(questions), 3)
        self.assertFalse(self.cache.populated)
        self.assertIsNone(self.cache.consume())

    async def test_failed_prefetch_leaves_slot_empty(self):
        await self.cache.trigger("xx")
        await drain_background_tasks()

        self.assertFalse(self.cache.populated)

    async def test_last_write_wins(self):
        self.cache.store([_question(1)])
        self.cache.store([_question(2)])

        self.assertEqual([q.id for q in self.cache.consume()], ["q2"])
