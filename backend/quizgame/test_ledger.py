from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase, mock

from pymongo.errors import DuplicateKeyError

from .db import InMemoryDatabase
from .ledger import HelpUsageLog, WalletLedger


class WalletLedgerTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.db = InMemoryDatabase()
        self.ledger = WalletLedger(self.db, initial_lives=15)

    async def test_new_wallet_starts_with_initial_lives(self):
        wallet = await self.ledger.get_wallet("u1")

        self.assertEqual(wallet.coins, 0)
        self.assertEqual(wallet.lives, 15)

    async def test_same_key_is_applied_once(self):
        first = await self.ledger.credit("u1", 3, 0, "g1-q4", "correct_answer")
        second = await self.ledger.credit("u1", 3, 0, "g1-q4", "correct_answer")
        third = await self.ledger.credit("u1", 3, 0, "g1-q4", "correct_answer")

        self.assertTrue(first.applied)
        self.assertFalse(first.replayed)
        self.assertTrue(second.replayed)
        self.assertTrue(third.replayed)
        self.assertEqual(third.new_balance.coins, 3)
        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 3)
        self.assertEqual(await self.db.wallet_ledger.count_documents({"user_id": "u1"}), 1)

    async def test_concurrent_submissions_of_one_key_credit_once(self):
        results = await asyncio.gather(
            *[self.ledger.credit("u1", 5, 0, "g1-q9", "correct_answer") for _ in range(5)]
        )

        self.assertTrue(all(r.applied for r in results))
        self.assertEqual(sum(1 for r in results if not r.replayed), 1)
        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 5)

    async def test_debit_below_zero_is_refused_and_not_recorded(self):
        result = await self.ledger.spend_coins("u1", 15, "g1-fifty_fifty-2", "help_fifty_fifty")

        self.assertFalse(result.applied)
        self.assertTrue(result.insufficient)
        self.assertIsNone(await self.ledger.get_entry("u1", "g1-fifty_fifty-2"))

        await self.ledger.credit("u1", 20, 0, "seed", "test")
        retried = await self.ledger.spend_coins("u1", 15, "g1-fifty_fifty-2", "help_fifty_fifty")
        self.assertTrue(retried.applied)
        self.assertEqual(retried.new_balance.coins, 5)

    async def test_spend_life_refused_at_zero(self):
        ledger = WalletLedger(self.db, initial_lives=1)

        first = await ledger.spend_life("u2", "g1-life")
        second = await ledger.spend_life("u2", "g2-life")

        self.assertTrue(first.applied)
        self.assertEqual(first.new_balance.lives, 0)
        self.assertFalse(second.applied)
        self.assertEqual(second.new_balance.lives, 0)

    async def test_empty_key_is_rejected(self):
        with self.assertRaises(ValueError):
            await self.ledger.credit("u1", 1, 0, "", "correct_answer")

    async def test_negative_spend_is_rejected(self):
        with self.assertRaises(ValueError):
            await self.ledger.spend_coins("u1", -5, "k", "test")

    async def test_duplicate_insert_race_is_treated_as_replay(self):
        await self.ledger.credit("u1", 1, 0, "k1", "correct_answer")
        real_get_entry = self.ledger.get_entry
        calls = {"n": 0}

        async def first_lookup_misses(user_id, key):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await real_get_entry(user_id, key)

        with mock.patch.object(self.ledger, "get_entry", side_effect=first_lookup_misses):
            result = await self.ledger.credit("u1", 1, 0, "k1", "correct_answer")

        self.assertTrue(result.replayed)
        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 1)

    async def test_unique_index_is_per_user_and_key(self):
        await self.db.wallet_ledger.insert_one({"user_id": "u1", "idempotency_key": "k"})
        await self.db.wallet_ledger.insert_one({"user_id": "u2", "idempotency_key": "k"})
        with self.assertRaises(DuplicateKeyError):
            await self.db.wallet_ledger.insert_one({"user_id": "u1", "idempotency_key": "k"})

    async def test_same_key_for_two_users_credits_both(self):
        alice = await self.ledger.credit("alice", 1, 0, "1700000000000-start", "game_start")
        bob = await self.ledger.credit("bob", 1, 0, "1700000000000-start", "game_start")

        self.assertFalse(bob.replayed)
        self.assertEqual(bob.new_balance.user_id, "bob")
        self.assertEqual(bob.new_balance.coins, 1)
        self.assertEqual(alice.new_balance.coins, 1)
        self.assertEqual((await self.ledger.get_wallet("bob")).coins, 1)
        self.assertEqual((await self.ledger.get_wallet("alice")).coins, 1)

    async def test_replay_reports_current_balance(self):
        await self.ledger.credit("u1", 3, 0, "g1-q4", "correct_answer")
        await self.ledger.credit("u1", 10, 2, "bonus", "test")

        replay = await self.ledger.credit("u1", 3, 0, "g1-q4", "correct_answer")

        self.assertTrue(replay.replayed)
        self.assertEqual((replay.new_balance.coins, replay.new_balance.lives), (13, 17))
        self.assertEqual(replay.new_balance.max_lives, 15)


class HelpUsageLogTests(IsolatedAsyncioTestCase):
    async def test_log_help_usage_appends_record(self):
        database = InMemoryDatabase()
        log = HelpUsageLog(database)

        await log.log_help_usage("u1", "audience", 3, 30)

        doc = await database.help_usage.find_one({"user_id": "u1"})
        self.assertEqual(doc["help_type"], "audience")
        self.assertEqual(doc["question_index"], 3)
        self.assertEqual(doc["cost"], 30)
