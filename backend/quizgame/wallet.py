from __future__ import annotations

import logging
from typing import Any, Optional

from .events import EventStore, event_store, wallet_channel
from .ledger import WalletLedger, ledger as default_ledger
from .models import Wallet

logger = logging.getLogger("quizgame.wallet")


class WalletCache:
    """Client-side view of one user's balance.

    The cache never computes a balance on its own: it applies deltas
    optimistically and is overwritten by every server read.
    """

    def __init__(self, user_id: str, ledger: Optional[WalletLedger] = None, events: Optional[EventStore] = None):
        self.user_id = user_id
        self.ledger = ledger or default_ledger
        self.events = events or event_store
        self.balance: Optional[Wallet] = None

    async def refetch_wallet(self) -> Wallet:
        self.balance = await self.ledger.get_wallet(self.user_id)
        return self.balance

    async def refresh_profile(self) -> Wallet:
        # profile and wallet share the balance fields the engine cares about
        return await self.refetch_wallet()

    def apply_optimistic(self, coins: int = 0, lives: int = 0) -> None:
        if self.balance is None:
            return
        self.balance = self.balance.model_copy(
            update={"coins": self.balance.coins + coins, "lives": self.balance.lives + lives}
        )

    def reconcile(self, wallet: Wallet) -> None:
        self.balance = wallet

    @property
    def coins(self) -> int:
        return self.balance.coins if self.balance else 0

    @property
    def lives(self) -> int:
        return self.balance.lives if self.balance else 0

    async def broadcast(self, source: str, coins_delta: int = 0, lives_delta: int = 0, **extra: Any) -> int:
        payload = {"type": "wallet:update", "source": source, "coins_delta": coins_delta, "lives_delta": lives_delta}
        payload.update(extra)
        return await self.events.append(wallet_channel(self.user_id), payload)
