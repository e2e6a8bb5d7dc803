from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from .db import db, settings
from .models import RewardLedgerEntry, Wallet
from .utils import now_ts

logger = logging.getLogger("quizgame.ledger")


class CreditResult(BaseModel):
    """Outcome of a ledger call.

    ``applied`` is true when the delta for the key is on the ledger, whether it
    was written by this call or an earlier one (``replayed``). A refused debit
    is never written, so the same key can be submitted again later.
    """

    applied: bool
    replayed: bool = False
    insufficient: bool = False
    new_balance: Wallet


class WalletLedger:
    """Server-owned append-only ledger of signed coin/life deltas."""

    def __init__(self, database: Any = None, initial_lives: Optional[int] = None):
        self.db = database or db
        self.initial_lives = settings.INITIAL_LIVES if initial_lives is None else initial_lives
        self.locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        self.locks.setdefault(user_id, asyncio.Lock())
        return self.locks[user_id]

    async def _load_wallet(self, user_id: str) -> Wallet:
        doc = await self.db.wallets.find_one({"user_id": user_id})
        if doc:
            return Wallet(**doc)
        wallet = Wallet(user_id=user_id, lives=self.initial_lives, max_lives=self.initial_lives)
        await self.db.wallets.update_one(
            {"user_id": user_id},
            {"$setOnInsert": wallet.model_dump()},
            upsert=True,
        )
        return wallet

    async def get_wallet(self, user_id: str) -> Wallet:
        async with self._lock(user_id):
            return await self._load_wallet(user_id)

    async def get_entry(self, user_id: str, idempotency_key: str) -> Optional[RewardLedgerEntry]:
        doc = await self.db.wallet_ledger.find_one({"user_id": user_id, "idempotency_key": idempotency_key})
        return RewardLedgerEntry(**doc) if doc else None

    async def credit(
        self,
        user_id: str,
        delta_coins: int,
        delta_lives: int,
        idempotency_key: str,
        source: str,
        metadata: Optional[dict] = None,
    ) -> CreditResult:
        """Apply a signed delta at most once per ``(user_id, idempotency_key)``."""

        if not idempotency_key:
            raise ValueError("idempotency_key is required")

        async with self._lock(user_id):
            existing = await self.get_entry(user_id, idempotency_key)
            if existing:
                return await self._replay(existing)

            wallet = await self._load_wallet(user_id)
            coins = wallet.coins + delta_coins
            lives = wallet.lives + delta_lives
            if coins < 0 or lives < 0:
                logger.info(
                    "ledger_debit_refused",
                    extra={
                        "user_id": user_id,
                        "idempotency_key": idempotency_key,
                        "coins_delta": delta_coins,
                        "lives_delta": delta_lives,
                    },
                )
                return CreditResult(applied=False, insufficient=True, new_balance=wallet)

            entry = RewardLedgerEntry(
                idempotency_key=idempotency_key,
                user_id=user_id,
                delta_coins=delta_coins,
                delta_lives=delta_lives,
                source=source,
                metadata=metadata or {},
                balance_coins=coins,
                balance_lives=lives,
            )
            try:
                await self.db.wallet_ledger.insert_one(entry.model_dump())
            except DuplicateKeyError:
                return await self._replay(await self.get_entry(user_id, idempotency_key))

            await self.db.wallets.update_one(
                {"user_id": user_id},
                {"$inc": {"coins": delta_coins, "lives": delta_lives}},
            )
            wallet.coins, wallet.lives = coins, lives

        logger.info(
            "ledger_credit_applied",
            extra={
                "user_id": user_id,
                "idempotency_key": idempotency_key,
                "source": source,
                "coins_delta": delta_coins,
                "lives_delta": delta_lives,
            },
        )
        return CreditResult(applied=True, new_balance=wallet)

    async def _replay(self, entry: RewardLedgerEntry) -> CreditResult:
        logger.info(
            "ledger_credit_replayed",
            extra={"user_id": entry.user_id, "idempotency_key": entry.idempotency_key},
        )
        # Caller holds the user lock, so this is the balance as of now.
        balance = await self._load_wallet(entry.user_id)
        return CreditResult(applied=True, replayed=True, new_balance=balance)

    async def spend_coins(self, user_id: str, amount: int, idempotency_key: str, source: str,
                          metadata: Optional[dict] = None) -> CreditResult:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        return await self.credit(user_id, -amount, 0, idempotency_key, source, metadata)

    async def spend_life(self, user_id: str, idempotency_key: str) -> CreditResult:
        return await self.credit(user_id, 0, -1, idempotency_key, "game_start_life")


class HelpUsageLog:
    """Append-only record of help activations; callers never wait on it."""

    def __init__(self, database: Any = None):
        self.db = database or db

    async def log_help_usage(self, user_id: str, help_type: str, question_index: int, cost: int) -> None:
        await self.db.help_usage.insert_one(
            {
                "user_id": user_id,
                "help_type": help_type,
                "question_index": question_index,
                "cost": cost,
                "timestamp": now_ts(),
            }
        )


ledger = WalletLedger()
help_log = HelpUsageLog()
