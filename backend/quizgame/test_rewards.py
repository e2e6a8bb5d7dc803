from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, mock

from .db import InMemoryDatabase
from .events import EventStore, wallet_channel
from .ledger import WalletLedger
from .models import Answer, GamePhase, GameSession, Question
from .rewards import CreditOutcome, RewardCreditor
from .wallet import WalletCache


def _questions(n: int):
    return [
        Question(
            id=f"q{i}",
            question=f"Question {i}?",
            answers=[
                Answer(key="A", text="right", correct=True),
                Answer(key="B", text="wrong"),
                Answer(key="C", text="also wrong"),
            ],
        )
        for i in range(n)
    ]


class _Flaky:
    """Wraps ``WalletLedger.credit`` so the first ``failures`` calls raise."""

    def __init__(self, real, failures: int):
        self.real = real
        self.failures = failures
        self.calls = 0

    async def call(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("ledger unreachable")
        return await self.real(*args, **kwargs)


class RewardCreditorTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = InMemoryDatabase()
        self.ledger = WalletLedger(self.db)
        self.events = EventStore(self.db)
        self.wallet = WalletCache("u1", self.ledger, self.events)
        await self.wallet.refetch_wallet()
        self.creditor = RewardCreditor(self.ledger, max_attempts=3, retry_base_seconds=0)
        self.session = GameSession(id="g1", user_id="u1", questions=_questions(10), phase=GamePhase.ANSWERING)

    async def test_correct_answer_credited_once_across_retries(self):
        flaky = _Flaky(self.ledger.credit, failures=2)
        with mock.patch.object(self.ledger, "credit", side_effect=flaky.call):
            task = self.creditor.credit_correct_answer(self.session, self.wallet)
            self.assertEqual(self.session.coins_earned, 1)
            self.assertEqual(self.wallet.coins, 1)
            receipt = await task

        self.assertEqual(flaky.calls, 3)
        self.assertEqual(receipt.outcome, CreditOutcome.APPLIED)
        self.assertEqual(receipt.idempotency_key, "g1-q0")
        self.assertEqual(self.session.coins_earned, 1)
        self.assertEqual(self.session.reward_trigger, 1)
        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 1)
        self.assertEqual(self.creditor.pending_keys("g1"), [])

        events = await self.events.list(wallet_channel("u1"))
        self.assertEqual(events[-1]["payload"]["type"], "wallet:update")
        self.assertEqual(events[-1]["payload"]["coins_delta"], 1)

    async def test_resubmitting_a_confirmed_key_does_not_double_credit(self):
        await self.creditor.credit_correct_answer(self.session, self.wallet)
        await self.creditor.credit_correct_answer(self.session, self.wallet)

        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 1)
        self.assertEqual(self.wallet.coins, 1)

    async def test_reward_follows_question_index_tiers(self):
        self.session.current_question_index = 9
        await self.creditor.credit_correct_answer(self.session, self.wallet)

        self.assertEqual(self.session.last_reward_amount, 5)
        self.assertEqual((await self.ledger.get_entry("u1", "g1-q9")).delta_coins, 5)

    async def test_unconfirmed_answer_credit_stays_pending_and_is_retried(self):
        with mock.patch.object(self.ledger, "credit", side_effect=ConnectionError("down")):
            receipt = await self.creditor.credit_correct_answer(self.session, self.wallet)

        self.assertEqual(receipt.outcome, CreditOutcome.PENDING)
        self.assertEqual(self.creditor.pending_keys("g1"), ["g1-q0"])
        # the optimistic counter is never rolled back
        self.assertEqual(self.session.coins_earned, 1)

        receipts = await self.creditor.retry_pending("g1", self.wallet)

        self.assertEqual([r.outcome for r in receipts], [CreditOutcome.APPLIED])
        self.assertEqual(self.creditor.pending_keys("g1"), [])
        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 1)

    async def test_retry_pending_skips_excluded_key(self):
        with mock.patch.object(self.ledger, "credit", side_effect=ConnectionError("down")):
            await self.creditor.credit_correct_answer(self.session, self.wallet)

        receipts = await self.creditor.retry_pending("g1", self.wallet, exclude="g1-q0")

        self.assertEqual(receipts, [])
        self.assertEqual(self.creditor.pending_keys("g1"), ["g1-q0"])

    async def test_start_reward_is_tried_once_and_never_kept_pending(self):
        failing = mock.AsyncMock(side_effect=ConnectionError("down"))
        with mock.patch.object(self.ledger, "credit", failing):
            receipt = await self.creditor.credit_start_reward(self.session, self.wallet)

        self.assertEqual(failing.await_count, 1)
        self.assertEqual(receipt.outcome, CreditOutcome.FAILED)
        self.assertTrue(receipt.idempotency_key.endswith("-start"))
        self.assertEqual(self.creditor.pending_keys("g1"), [])
        self.assertEqual(self.session.coins_earned, 1)

    async def test_start_reward_applied(self):
        receipt = await self.creditor.credit_start_reward(self.session, self.wallet)

        self.assertEqual(receipt.outcome, CreditOutcome.APPLIED)
        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 1)

