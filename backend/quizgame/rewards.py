from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from .db import settings
from .economy import START_GAME_REWARD, coins_for_question
from .ledger import CreditResult, WalletLedger, ledger as default_ledger
from .models import GameSession, Wallet
from .utils import now_ms, spawn
from .wallet import WalletCache

logger = logging.getLogger("quizgame.rewards")


class CreditOutcome(str, Enum):
    APPLIED = "applied"
    PENDING = "pending"
    FAILED = "failed"


class CreditReceipt(BaseModel):
    idempotency_key: str
    amount: int
    outcome: CreditOutcome
    new_balance: Optional[Wallet] = None


class PendingCredit(BaseModel):
    game_id: str
    user_id: str
    idempotency_key: str
    amount: int
    source: str
    metadata: dict = {}


def correct_answer_key(game_instance_id: str, question_index: int) -> str:
    return f"{game_instance_id}-q{question_index}"


def start_reward_key(timestamp_ms: int) -> str:
    return f"{timestamp_ms}-start"


class RewardCreditor:
    """Optimistic-first reward crediting against the idempotent ledger.

    Phase one mutates the local session synchronously so the counter and the
    coin animation move on the same tick as the answer. Phase two confirms with
    the ledger in a background task. Per-question credits that could not be
    confirmed stay pending under their deterministic key and are re-submitted
    by later actions; the start-of-game credit is tried once only.
    """

    def __init__(
        self,
        ledger: Optional[WalletLedger] = None,
        max_attempts: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
    ):
        self.ledger = ledger or default_ledger
        self.max_attempts = max_attempts or settings.CREDIT_MAX_ATTEMPTS
        self.retry_base_seconds = (
            settings.CREDIT_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        )
        self._pending: Dict[str, PendingCredit] = {}

    def pending_keys(self, game_id: str) -> List[str]:
        return [key for key, p in self._pending.items() if p.game_id == game_id]

    def credit_correct_answer(self, session: GameSession, wallet: WalletCache) -> asyncio.Task:
        question_index = session.current_question_index
        reward = coins_for_question(question_index)
        key = correct_answer_key(session.id, question_index)

        session.coins_earned += reward
        session.last_reward_amount = reward
        session.reward_trigger += 1
        wallet.apply_optimistic(coins=reward)

        pending = PendingCredit(
            game_id=session.id,
            user_id=session.user_id,
            idempotency_key=key,
            amount=reward,
            source="correct_answer",
            metadata={"game_id": session.id, "question_index": question_index},
        )
        self._pending[key] = pending
        return spawn(self._confirm(pending, wallet, attempts=self.max_attempts), name=f"credit:{key}")

    def credit_start_reward(self, session: GameSession, wallet: WalletCache) -> Optional[asyncio.Task]:
        if START_GAME_REWARD <= 0:
            return None
        key = start_reward_key(now_ms())

        session.coins_earned += START_GAME_REWARD
        session.last_reward_amount = START_GAME_REWARD
        session.reward_trigger += 1
        wallet.apply_optimistic(coins=START_GAME_REWARD)

        # The key is time based and cannot be re-derived, so it is never kept pending.
        pending = PendingCredit(
            game_id=session.id,
            user_id=session.user_id,
            idempotency_key=key,
            amount=START_GAME_REWARD,
            source="game_start",
            metadata={"game_id": session.id},
        )
        return spawn(self._confirm(pending, wallet, attempts=1, keep_pending=False), name=f"credit:{key}")

    async def retry_pending(
        self, game_id: str, wallet: WalletCache, exclude: Optional[str] = None
    ) -> List[CreditReceipt]:
        receipts = []
        for key in self.pending_keys(game_id):
            if key == exclude:
                continue
            pending = self._pending.get(key)
            if pending is None:
                continue
            receipts.append(await self._confirm(pending, wallet, attempts=1))
        return receipts

    async def _confirm(
        self,
        pending: PendingCredit,
        wallet: WalletCache,
        *,
        attempts: int,
        keep_pending: bool = True,
    ) -> CreditReceipt:
        result: Optional[CreditResult] = None
        for attempt in range(1, attempts + 1):
            try:
                result = await self.ledger.credit(
                    pending.user_id,
                    pending.amount,
                    0,
                    pending.idempotency_key,
                    pending.source,
                    pending.metadata,
                )
                break
            except Exception:
                logger.warning(
                    "reward_credit_failed",
                    exc_info=True,
                    extra={
                        "user_id": pending.user_id,
                        "game_id": pending.game_id,
                        "idempotency_key": pending.idempotency_key,
                        "attempt": attempt,
                    },
                )
                if attempt < attempts:
                    await asyncio.sleep(self.retry_base_seconds * (2 ** (attempt - 1)))

        if result is None or not result.applied:
            outcome = CreditOutcome.PENDING if keep_pending else CreditOutcome.FAILED
            if not keep_pending:
                self._pending.pop(pending.idempotency_key, None)
            logger.info(
                "reward_credit_unconfirmed",
                extra={"idempotency_key": pending.idempotency_key, "outcome": outcome.value},
            )
            return CreditReceipt(idempotency_key=pending.idempotency_key, amount=pending.amount, outcome=outcome)

        self._pending.pop(pending.idempotency_key, None)
        wallet.reconcile(result.new_balance)
        try:
            await wallet.refetch_wallet()
            if not result.replayed:
                await wallet.broadcast(
                    pending.source, coins_delta=pending.amount, idempotency_key=pending.idempotency_key
                )
        except Exception:
            logger.warning("wallet_refresh_failed", exc_info=True, extra={"user_id": pending.user_id})

        return CreditReceipt(
            idempotency_key=pending.idempotency_key,
            amount=pending.amount,
            outcome=CreditOutcome.APPLIED,
            new_balance=wallet.balance,
        )
