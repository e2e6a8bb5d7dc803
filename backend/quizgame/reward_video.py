from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, List, Optional

from pydantic import BaseModel

from .db import db, settings
from .economy import VIDEOS_REQUIRED, video_reward
from .errors import NoVideoAvailable
from .ledger import WalletLedger, ledger as default_ledger
from .models import RewardContext, RewardSessionState, RewardVideo, RewardVideoSession, Wallet
from .utils import fire_and_forget, now_ms, now_ts, spawn
from .wallet import WalletCache

logger = logging.getLogger("quizgame.reward_video")


class VideoRewardResult(BaseModel):
    success: bool
    already_claimed: bool = False
    coins_delta: int = 0
    lives_delta: int = 0
    error: Optional[str] = None
    new_balance: Optional[Wallet] = None


def reward_session_key(session_id: str) -> str:
    return f"reward-{session_id}"


class RewardSessionService:
    """Server side of reward videos: catalog, session records and crediting.

    The reward is derived from the stored session context, never from what
    the client sends at completion time.
    """

    def __init__(self, database: Any = None, ledger: Optional[WalletLedger] = None):
        self.db = database or db
        self.ledger = ledger or default_ledger

    async def add_videos(self, videos: List[RewardVideo]) -> int:
        for video in videos:
            await self.db.reward_videos.update_one({"id": video.id}, {"$set": video.model_dump()}, upsert=True)
        return len(videos)

    async def preload_videos(self, user_id: str, count: int) -> List[RewardVideo]:
        docs = await self.db.reward_videos.find({}).limit(count).to_list()
        return [RewardVideo(**doc) for doc in docs]

    async def start_reward_session(self, session: RewardVideoSession) -> None:
        await self.db.reward_sessions.insert_one(
            {
                "id": session.id,
                "user_id": session.user_id,
                "context": session.context.value,
                "target_reward": session.target_reward,
                "required_count": session.required_count,
                "video_ids": session.required_video_ids,
                "status": "active",
                "created_at": now_ts(),
            }
        )
        logger.info(
            "reward_session_registered",
            extra={"user_id": session.user_id, "session_id": session.id, "context": session.context.value},
        )

    async def complete_reward_session(
        self, user_id: str, session_id: str, watched_video_ids: List[str]
    ) -> VideoRewardResult:
        doc = await self.db.reward_sessions.find_one({"id": session_id})
        if not doc or doc["user_id"] != user_id:
            return VideoRewardResult(success=False, error="UNKNOWN_SESSION")
        if doc["status"] == "cancelled":
            return VideoRewardResult(success=False, error="SESSION_CANCELLED")

        key = reward_session_key(session_id)
        if await self.ledger.get_entry(user_id, key):
            return VideoRewardResult(success=True, already_claimed=True)

        watched = set(watched_video_ids) & set(doc["video_ids"])
        if len(watched) < doc["required_count"]:
            logger.info(
                "reward_session_insufficient_videos",
                extra={"user_id": user_id, "session_id": session_id},
            )
            return VideoRewardResult(success=False, error="INSUFFICIENT_VIDEOS_WATCHED")

        context = RewardContext(doc["context"])
        coins, lives = video_reward(context, doc["target_reward"])
        result = await self.ledger.credit(
            user_id,
            coins,
            lives,
            key,
            f"video_reward_{context.value}",
            {"reward_session_id": session_id, "watched_video_ids": sorted(watched)},
        )
        await self.db.reward_sessions.update_one({"id": session_id}, {"$set": {"status": "completed"}})
        if result.replayed:
            return VideoRewardResult(success=True, already_claimed=True, new_balance=result.new_balance)
        return VideoRewardResult(
            success=True,
            coins_delta=coins,
            lives_delta=lives,
            new_balance=result.new_balance,
        )

    async def cancel_session(self, user_id: str, session_id: str) -> None:
        doc = await self.db.reward_sessions.find_one({"id": session_id})
        if doc and doc["user_id"] == user_id and doc["status"] == "active":
            await self.db.reward_sessions.update_one({"id": session_id}, {"$set": {"status": "cancelled"}})


reward_service = RewardSessionService()


class RewardVideoStore:
    """Per-user client store: preloaded video queue plus the single active session."""

    def __init__(
        self,
        user_id: str,
        wallet: WalletCache,
        service: Optional[RewardSessionService] = None,
        preload_count: Optional[int] = None,
        refill_threshold: Optional[int] = None,
    ):
        self.user_id = user_id
        self.wallet = wallet
        self.service = service or reward_service
        self.preload_count = preload_count or settings.VIDEO_PRELOAD_COUNT
        self.refill_threshold = settings.VIDEO_REFILL_THRESHOLD if refill_threshold is None else refill_threshold
        self.queue: List[RewardVideo] = []
        self.is_preloading = False
        self.active: Optional[RewardVideoSession] = None
        self._registration: Optional[asyncio.Task] = None
        self._refill: Optional[asyncio.Task] = None

    async def preload(self) -> int:
        if self.is_preloading:
            return len(self.queue)
        self.is_preloading = True
        try:
            self.queue = await self.service.preload_videos(self.user_id, self.preload_count)
        except Exception:
            logger.warning("reward_video_preload_failed", exc_info=True, extra={"user_id": self.user_id})
            self.queue = []
        finally:
            self.is_preloading = False
        return len(self.queue)

    async def refill_if_needed(self) -> None:
        if len(self.queue) > self.refill_threshold or self.is_preloading:
            return
        self.is_preloading = True
        try:
            videos = await self.service.preload_videos(self.user_id, self.preload_count)
        finally:
            self.is_preloading = False
        known = {v.id for v in self.queue}
        self.queue.extend(v for v in videos if v.id not in known)

    def has_enough_videos(self, count: int) -> bool:
        return len(self.queue) >= count

    def start(self, context: RewardContext, target_reward: int = 0) -> Optional[RewardVideoSession]:
        """Open a session from already preloaded videos, without waiting on the network."""

        if self.active is not None:
            logger.warning(
                "reward_session_already_active",
                extra={"user_id": self.user_id, "session_id": self.active.id},
            )
            return None

        required = VIDEOS_REQUIRED[context]
        if not self.has_enough_videos(required):
            raise NoVideoAvailable(
                "No reward video available",
                details={"required": required, "queued": len(self.queue)},
            )

        videos, self.queue = self.queue[:required], self.queue[required:]
        session = RewardVideoSession(
            id=f"{self.user_id}-{context.value}-{now_ms()}-{uuid.uuid4().hex[:7]}",
            user_id=self.user_id,
            context=context,
            target_reward=target_reward,
            videos=videos,
            required_count=required,
            state=RewardSessionState.ACTIVE,
        )
        self.active = session
        self._registration = spawn(self.service.start_reward_session(session), name=f"reward_start:{session.id}")
        if self._refill is None or self._refill.done():
            self._refill = fire_and_forget(self.refill_if_needed(), name="reward_video_refill", user_id=self.user_id)

        logger.info(
            "reward_session_started",
            extra={"user_id": self.user_id, "session_id": session.id, "context": context.value},
        )
        return session

    async def complete(self, watched_video_ids: List[str]) -> VideoRewardResult:
        session = self.active
        if session is None or session.state != RewardSessionState.ACTIVE:
            logger.warning("reward_session_complete_ignored", extra={"user_id": self.user_id})
            return VideoRewardResult(success=False, error="NO_ACTIVE_SESSION")

        session.state = RewardSessionState.COMPLETING
        try:
            if self._registration is not None:
                await self._registration
            result = await self.service.complete_reward_session(self.user_id, session.id, watched_video_ids)
        except Exception:
            logger.warning(
                "reward_session_complete_failed",
                exc_info=True,
                extra={"user_id": self.user_id, "session_id": session.id},
            )
            result = VideoRewardResult(success=False, error="COMPLETE_FAILED")

        if result.success:
            # the visible balance must be the confirmed one before the session is torn down
            try:
                await self.wallet.refetch_wallet()
                await self.wallet.broadcast(
                    f"video_reward_{session.context.value}",
                    coins_delta=result.coins_delta,
                    lives_delta=result.lives_delta,
                    session_id=session.id,
                )
            except Exception:
                logger.warning("wallet_refresh_failed", exc_info=True, extra={"user_id": self.user_id})

        self._close(session, "success" if result.success else "failed")
        logger.info(
            "reward_session_completed",
            extra={
                "user_id": self.user_id,
                "session_id": session.id,
                "outcome": session.outcome,
                "coins_delta": result.coins_delta,
                "lives_delta": result.lives_delta,
            },
        )
        return result

    def cancel(self, outcome: str = "cancelled") -> bool:
        """Close the active session without crediting; the server is told best-effort."""

        session = self.active
        if session is None or session.state != RewardSessionState.ACTIVE:
            return False
        registration = self._registration
        self._close(session, outcome)
        fire_and_forget(
            self._notify_cancel(session.id, registration),
            name="reward_cancel",
            session_id=session.id,
        )
        logger.info("reward_session_cancelled", extra={"user_id": self.user_id, "session_id": session.id})
        return True

    async def _notify_cancel(self, session_id: str, registration: Optional[asyncio.Task]) -> None:
        if registration is not None:
            await registration
        await self.service.cancel_session(self.user_id, session_id)

    def _close(self, session: RewardVideoSession, outcome: str) -> None:
        session.state = RewardSessionState.CLOSED
        session.outcome = outcome
        if self.active is session:
            self.active = None
            self._registration = None

    def reset(self) -> None:
        if self.active is not None:
            self.cancel(outcome="exited")
        if self._refill is not None and not self._refill.done():
            self._refill.cancel()
        self._refill = None
        self.queue = []
        self.is_preloading = False
