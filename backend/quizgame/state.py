from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import AuthSessionMissing
from .events import EventStore, event_store
from .ledger import WalletLedger, ledger as default_ledger
from .prefetch import PrefetchCache
from .questions import QuestionBank, question_bank
from .reward_video import RewardSessionService, RewardVideoStore, reward_service
from .utils import fire_and_forget
from .wallet import WalletCache

logger = logging.getLogger("quizgame.state")


@dataclass
class UserStores:
    user_id: str
    wallet: WalletCache
    reward_videos: RewardVideoStore
    prefetch: PrefetchCache


class StoreRegistry:
    """Process-wide per-user stores, created at login and torn down at logout."""

    def __init__(
        self,
        ledger: Optional[WalletLedger] = None,
        rewards: Optional[RewardSessionService] = None,
        bank: Optional[QuestionBank] = None,
        events: Optional[EventStore] = None,
    ):
        self.ledger = ledger or default_ledger
        self.rewards = rewards or reward_service
        self.bank = bank or question_bank
        self.events = events or event_store
        self._stores: Dict[str, UserStores] = {}

    async def login(self, user_id: str, preload_videos: bool = True) -> UserStores:
        stores = self._stores.get(user_id)
        if stores is None:
            wallet = WalletCache(user_id, self.ledger, self.events)
            stores = UserStores(
                user_id=user_id,
                wallet=wallet,
                reward_videos=RewardVideoStore(user_id, wallet, self.rewards),
                prefetch=PrefetchCache(self.bank),
            )
            self._stores[user_id] = stores
            logger.info("user_stores_created", extra={"user_id": user_id})

        await stores.wallet.refetch_wallet()
        if preload_videos:
            fire_and_forget(stores.reward_videos.preload(), name="reward_video_preload", user_id=user_id)
        return stores

    def get(self, user_id: str) -> UserStores:
        stores = self._stores.get(user_id)
        if stores is None:
            raise AuthSessionMissing("No active session for user", details={"user_id": user_id})
        return stores

    def is_logged_in(self, user_id: str) -> bool:
        return user_id in self._stores

    async def logout(self, user_id: str) -> None:
        stores = self._stores.pop(user_id, None)
        if stores is None:
            return
        stores.reward_videos.reset()
        stores.prefetch.clear()
        logger.info("user_stores_torn_down", extra={"user_id": user_id})


registry = StoreRegistry()
