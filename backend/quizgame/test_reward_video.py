from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, mock

from .db import InMemoryDatabase
from .errors import NoVideoAvailable
from .events import EventStore, wallet_channel
from .ledger import WalletLedger
from .models import RewardContext, RewardSessionState, RewardVideo
from .reward_video import RewardSessionService, RewardVideoStore, reward_session_key
from .utils import drain_background_tasks
from .wallet import WalletCache


def _videos(n: int):
    return [RewardVideo(id=f"v{i}", embed_url=f"https://videos.example.com/{i}") for i in range(n)]


class RewardVideoStoreTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = InMemoryDatabase()
        self.ledger = WalletLedger(self.db, initial_lives=15)
        self.events = EventStore(self.db)
        self.service = RewardSessionService(self.db, self.ledger)
        await self.service.add_videos(_videos(6))
        self.wallet = WalletCache("u1", self.ledger, self.events)
        await self.wallet.refetch_wallet()
        self.store = RewardVideoStore("u1", self.wallet, self.service, preload_count=6, refill_threshold=0)
        await self.store.preload()

    async def test_cancel_before_countdown_leaves_wallet_unchanged(self):
        before = await self.ledger.get_wallet("u1")

        session = self.store.start(RewardContext.DAILY_GIFT, target_reward=50)
        self.assertTrue(self.store.cancel())
        await drain_background_tasks()

        after = await self.ledger.get_wallet("u1")
        self.assertEqual((after.coins, after.lives), (before.coins, before.lives))
        self.assertEqual(session.state, RewardSessionState.CLOSED)
        self.assertEqual(session.outcome, "cancelled")
        self.assertIsNone(self.store.active)
        doc = await self.db.reward_sessions.find_one({"id": session.id})
        self.assertEqual(doc["status"], "cancelled")

    async def test_completing_a_cancelled_session_credits_nothing(self):
        session = self.store.start(RewardContext.DAILY_GIFT, target_reward=50)
        self.store.cancel()
        await drain_background_tasks()

        late = await self.store.complete([v.id for v in session.videos])
        direct = await self.service.complete_reward_session("u1", session.id, [v.id for v in session.videos])

        self.assertFalse(late.success)
        self.assertEqual(late.error, "NO_ACTIVE_SESSION")
        self.assertEqual(direct.error, "SESSION_CANCELLED")
        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 0)

    async def test_only_one_session_at_a_time(self):
        first = self.store.start(RewardContext.END_GAME, target_reward=10)
        second = self.store.start(RewardContext.DAILY_GIFT, target_reward=10)

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertIs(self.store.active, first)

    async def test_refill_grants_coins_and_lives_after_two_videos(self):
        session = self.store.start(RewardContext.REFILL)
        self.assertEqual(session.required_count, 2)

        result = await self.store.complete(session.required_video_ids)

        self.assertTrue(result.success)
        self.assertEqual((result.coins_delta, result.lives_delta), (500, 5))
        self.assertEqual(self.wallet.coins, 500)
        self.assertEqual(self.wallet.lives, 20)
        self.assertIsNone(self.store.active)
        self.assertEqual(session.outcome, "success")

        events = await self.events.list(wallet_channel("u1"))
        self.assertEqual(events[-1]["payload"]["source"], "video_reward_refill")

    async def test_reward_comes_from_stored_context(self):
        session = self.store.start(RewardContext.END_GAME, target_reward=12)

        result = await self.store.complete(session.required_video_ids)

        self.assertEqual(result.coins_delta, 12)
        entry = await self.ledger.get_entry("u1", reward_session_key(session.id))
        self.assertEqual(entry.delta_coins, 12)

    async def test_too_few_watched_videos_is_refused(self):
        session = self.store.start(RewardContext.REFILL)

        result = await self.store.complete(session.required_video_ids[:1])

        self.assertFalse(result.success)
        self.assertEqual(result.error, "INSUFFICIENT_VIDEOS_WATCHED")
        self.assertEqual(session.outcome, "failed")
        self.assertEqual((await self.ledger.get_wallet("u1")).coins, 0)

    async def test_complete_is_idempotent_per_session(self):
        session = self.store.start(RewardContext.RESCUE)
        await self.store.complete(session.required_video_ids)

        again = await self.store.complete(session.required_video_ids)
        replay = await self.service.complete_reward_session("u1", session.id, session.required_video_ids)

        self.assertEqual(again.error, "NO_ACTIVE_SESSION")
        self.assertTrue(replay.already_claimed)
        wallet = await self.ledger.get_wallet("u1")
        self.assertEqual((wallet.coins, wallet.lives), (15, 16))

    async def test_no_video_available(self):
        empty = RewardVideoStore("u1", self.wallet, RewardSessionService(InMemoryDatabase(), self.ledger))
        await empty.preload()

        with self.assertRaises(NoVideoAvailable):
            empty.start(RewardContext.DAILY_GIFT)
        self.assertIsNone(empty.active)

    async def test_server_failure_on_complete_closes_session_as_failed(self):
        session = self.store.start(RewardContext.DAILY_GIFT, target_reward=5)

        with mock.patch.object(self.service, "complete_reward_session", side_effect=ConnectionError("down")):
            result = await self.store.complete(session.required_video_ids)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "COMPLETE_FAILED")
        self.assertIsNone(self.store.active)

    async def test_unknown_session_is_rejected(self):
        result = await self.service.complete_reward_session("u1", "nope", ["v0"])

        self.assertFalse(result.success)
        self.assertEqual(result.error, "UNKNOWN_SESSION")

    async def test_reset_cancels_active_session_and_empties_queue(self):
        session = self.store.start(RewardContext.DAILY_GIFT)

        self.store.reset()
        await drain_background_tasks()

        self.assertEqual(session.outcome, "exited")
        self.assertEqual(self.store.queue, [])

    async def test_reset_stops_a_pending_refill(self):
        store = RewardVideoStore("u1", self.wallet, self.service, preload_count=6, refill_threshold=10)
        await store.preload()
        store.start(RewardContext.DAILY_GIFT)

        store.reset()
        await drain_background_tasks()

        self.assertEqual(store.queue, [])
        self.assertFalse(store.is_preloading)

    async def test_refill_tops_up_the_queue_after_start(self):
        store = RewardVideoStore("u1", self.wallet, self.service, preload_count=6, refill_threshold=10)
        await store.preload()

        store.start(RewardContext.DAILY_GIFT)
        await drain_background_tasks()

        self.assertEqual(len(store.queue), 6)
