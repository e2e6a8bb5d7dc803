from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from .db import db, settings
from .economy import continue_cost, swap_cost
from .errors import GameNotFound, InsufficientFunds, QuestionFetchError, ServiceUnavailable
from .events import EventStore, event_store, game_channel
from .ledger import HelpUsageLog, WalletLedger, help_log as default_help_log, ledger as default_ledger
from .lifelines import LifelineActivation, LifelineOutcome, LifelineRegistry, availability, register_attempt
from .models import (
    PLAYING_PHASES,
    TIMEOUT_SENTINEL,
    ErrorBanner,
    GamePhase,
    GameResult,
    GameSession,
    HelpType,
    LifelineState,
)
from .questions import QuestionBank, question_bank
from .rewards import RewardCreditor
from .state import StoreRegistry, UserStores, registry as default_registry
from .timer import QuestionTimer, SwipeGate
from .utils import average, fire_and_forget, new_game_instance_id, now_ts

logger = logging.getLogger("quizgame.game")

MAX_RESPONSE_SECONDS = 60


class GameController:
    """Drives one player's game: answer, reveal, continue or rescue, next.

    Every public operation runs under the game's lock against the stored
    snapshot, so a swipe and a timer expiry racing for the same question
    resolve to whichever got the lock first; the other finds the phase or the
    question index moved on and does nothing.
    """

    def __init__(
        self,
        database: Any = None,
        registry: Optional[StoreRegistry] = None,
        ledger: Optional[WalletLedger] = None,
        bank: Optional[QuestionBank] = None,
        help_log: Optional[HelpUsageLog] = None,
        creditor: Optional[RewardCreditor] = None,
        lifelines: Optional[LifelineRegistry] = None,
        events: Optional[EventStore] = None,
        question_seconds: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        animation_seconds: Optional[float] = None,
        swipe_cooldown: Optional[float] = None,
        banner_seconds: Optional[float] = None,
        prefetch_checkpoint: Optional[int] = None,
    ):
        self.db = database or db
        self.registry = registry or default_registry
        self.ledger = ledger or default_ledger
        self.bank = bank or question_bank
        self.help_log = help_log or default_help_log
        self.creditor = creditor or RewardCreditor(self.ledger)
        self.lifelines = lifelines or LifelineRegistry(self.ledger, self.help_log)
        self.events = events or event_store

        self.question_seconds = question_seconds or settings.QUESTION_SECONDS
        self.tick_seconds = settings.TICK_SECONDS if tick_seconds is None else tick_seconds
        self.animation_seconds = settings.ADVANCE_ANIMATION_SECONDS if animation_seconds is None else animation_seconds
        self.swipe_cooldown = settings.SWIPE_COOLDOWN_SECONDS if swipe_cooldown is None else swipe_cooldown
        self.banner_seconds = settings.ERROR_BANNER_SECONDS if banner_seconds is None else banner_seconds
        self.prefetch_checkpoint = (
            settings.PREFETCH_CHECKPOINT if prefetch_checkpoint is None else prefetch_checkpoint
        )

        self.locks: Dict[str, asyncio.Lock] = {}
        self.timers: Dict[str, QuestionTimer] = {}
        self.swipe_gates: Dict[str, SwipeGate] = {}
        self.active_games: Dict[str, str] = {}

    def _lock(self, game_id: str) -> asyncio.Lock:
        self.locks.setdefault(game_id, asyncio.Lock())
        return self.locks[game_id]

    def _gate(self, game_id: str) -> SwipeGate:
        self.swipe_gates.setdefault(game_id, SwipeGate(self.swipe_cooldown))
        return self.swipe_gates[game_id]

    async def get_session(self, game_id: str) -> GameSession | None:
        doc = await self.db.games.find_one({"id": game_id})
        return GameSession(**doc) if doc else None

    async def _require(self, game_id: str) -> GameSession:
        s = await self.get_session(game_id)
        if not s:
            raise GameNotFound("Game not found", details={"game_id": game_id})
        self._expire_banner(s)
        return s

    async def save_session(self, s: GameSession):
        await self.db.games.update_one(
            {"id": s.id},
            {"$set": s.model_dump()},
            upsert=True
        )

    def _stores(self, s: GameSession) -> UserStores:
        return self.registry.get(s.user_id)

    # -- lifecycle ---------------------------------------------------------

    async def start_game(self, user_id: str, lang: str = "en", use_prefetched: bool = False) -> GameSession:
        stores = self.registry.get(user_id)

        previous = self.active_games.get(user_id)
        if previous:
            await self.exit_game(previous)

        questions = stores.prefetch.consume() if use_prefetched else None
        from_prefetch = bool(questions)
        if not questions:
            try:
                questions = await self.bank.fetch_question_set(lang)
            except QuestionFetchError:
                raise
            except Exception as exc:
                logger.error("question_fetch_failed", exc_info=True, extra={"user_id": user_id})
                raise QuestionFetchError("Failed to load questions") from exc

        s = GameSession(id=new_game_instance_id(), user_id=user_id, lang=lang, questions=questions)
        async with self._lock(s.id):
            try:
                life = await self.ledger.spend_life(user_id, f"{s.id}-life")
            except Exception as exc:
                if from_prefetch:
                    stores.prefetch.store(questions)
                logger.error("spend_life_failed", exc_info=True, extra={"user_id": user_id, "game_id": s.id})
                raise ServiceUnavailable("Could not start the game, try again") from exc

            if not life.applied:
                if from_prefetch:
                    stores.prefetch.store(questions)
                stores.wallet.reconcile(life.new_balance)
                s.phase = GamePhase.OUT_OF_LIVES
                s.rescue_reason = "NO_LIFE"
                await self.save_session(s)
                logger.info("game_start_out_of_lives", extra={"user_id": user_id, "game_id": s.id})
                return s

            stores.wallet.reconcile(life.new_balance)
            fire_and_forget(stores.wallet.broadcast("game_start", lives_delta=-1), name="broadcast", user_id=user_id)

            s.phase = GamePhase.ANSWERING
            s.question_start_time = now_ts()
            self.creditor.credit_start_reward(s, stores.wallet)
            self.active_games[user_id] = s.id
            self._start_timer(s)
            self._maybe_prefetch(s, stores)
            await self.save_session(s)

        logger.info(
            "game_started",
            extra={"user_id": user_id, "game_id": s.id, "source": "prefetch" if from_prefetch else "fetch"},
        )
        await self._publish_question(s)
        return s

    async def restart_game_immediately(self, game_id: str) -> GameSession:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if s.phase in PLAYING_PHASES:
                # abandoning mid-game forfeits the rest of the run
                await self._finish(s, exited=True)
                await self.save_session(s)
        return await self.start_game(s.user_id, s.lang, use_prefetched=True)

    async def finish_game(self, game_id: str) -> GameSession:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if s.phase in PLAYING_PHASES:
                await self._finish(s)
                await self.save_session(s)
            return s

    async def exit_game(self, game_id: str) -> GameSession:
        """Navigation away or loss of focus: the game ends as an exit, never a completion."""

        async with self._lock(game_id):
            s = await self._require(game_id)
            if s.phase in PLAYING_PHASES or s.phase == GamePhase.IDLE:
                await self._finish(s, exited=True)
                await self.save_session(s)
            if self.registry.is_logged_in(s.user_id):
                self.registry.get(s.user_id).reward_videos.cancel(outcome="exited")
            return s

    async def _finish(self, s: GameSession, exited: bool = False) -> None:
        self._stop_timer(s.id)
        s.phase = GamePhase.FINISHED
        s.is_animating = False
        s.completed = not exited
        s.exited = exited
        s.error_banner = None
        if self.active_games.get(s.user_id) == s.id:
            del self.active_games[s.user_id]

        result = GameResult(
            game_id=s.id,
            user_id=s.user_id,
            correct_answers=s.correct_answers,
            total_questions=len(s.questions),
            coins_earned=s.coins_earned,
            average_response_time=round(average(s.response_times), 2),
            completed=s.completed,
            exited=exited,
            question_analytics=[
                {
                    "question_id": q.id,
                    "topic": q.topic,
                    "was_correct": s.answer_results[i] if i < len(s.answer_results) else False,
                    "response_time_seconds": s.response_times[i] if i < len(s.response_times) else 0,
                    "question_index": i,
                }
                for i, q in enumerate(s.questions)
            ],
        )
        await self.db.game_results.insert_one(result.model_dump())

        if self.registry.is_logged_in(s.user_id):
            wallet = self.registry.get(s.user_id).wallet
            fire_and_forget(self.creditor.retry_pending(s.id, wallet), name="retry_pending", game_id=s.id)
            fire_and_forget(wallet.refresh_profile(), name="refresh_profile", user_id=s.user_id)

        logger.info(
            "game_finished",
            extra={"user_id": s.user_id, "game_id": s.id, "outcome": "exited" if exited else "completed"},
        )
        await self.events.append(
            game_channel(s.id),
            {"type": "game_over", "result": result.model_dump(mode="json")},
        )

    # -- answering ---------------------------------------------------------

    async def select_answer(self, game_id: str, question_index: int, answer_key: str) -> GameSession:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if (
                s.phase != GamePhase.ANSWERING
                or s.is_animating
                or s.selected_answer is not None
                or question_index != s.current_question_index
            ):
                logger.info("answer_ignored", extra={"game_id": game_id, "phase": s.phase.value})
                return s

            question = s.current_question
            if answer_key not in {a.key for a in question.answers}:
                raise ValueError(f"Unknown answer key: {answer_key}")
            if answer_key == s.lifelines.removed_answer:
                return s

            if HelpType.DOUBLE_ANSWER in s.lifelines.active:
                attempt = register_attempt(s.lifelines, question, answer_key)
                if not attempt.resolved:
                    await self.save_session(s)
                    return s
                self._resolve(s, attempt.key, attempt.correct)
            else:
                self._resolve(s, answer_key, question.is_correct(answer_key))

            await self.save_session(s)

        await self._publish_reveal(s)
        return s

    def _resolve(self, s: GameSession, key: str, correct: bool) -> None:
        self._stop_timer(s.id)
        response_time = now_ts() - s.question_start_time
        if 0 <= response_time <= MAX_RESPONSE_SECONDS:
            s.response_times.append(round(response_time, 3))
        s.selected_answer = key
        s.answer_results.append(correct)
        s.phase = GamePhase.REVEALING

        stores = self._stores(s)
        if correct:
            s.correct_answers += 1
            task = self.creditor.credit_correct_answer(s, stores.wallet)
            fire_and_forget(
                self.creditor.retry_pending(s.id, stores.wallet, exclude=self._current_key(s)),
                name="retry_pending",
                game_id=s.id,
            )
            logger.info(
                "answer_correct",
                extra={"game_id": s.id, "question_index": s.current_question_index, "task": task.get_name()},
            )
        else:
            s.continue_type = "wrong"
            cost = continue_cost("wrong")
            self._show_banner(s, f"Wrong answer. Continue for {cost} gold.")
            logger.info("answer_wrong", extra={"game_id": s.id, "question_index": s.current_question_index})

    def _current_key(self, s: GameSession) -> str:
        return f"{s.id}-q{s.current_question_index}"

    async def timeout(self, game_id: str, question_index: int) -> GameSession:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if (
                s.phase != GamePhase.ANSWERING
                or s.is_animating
                or s.selected_answer is not None
                or question_index != s.current_question_index
            ):
                return s

            self._stop_timer(s.id)
            s.selected_answer = TIMEOUT_SENTINEL
            s.answer_results.append(False)
            s.continue_type = "timeout"
            s.phase = GamePhase.REVEALING

            cost = continue_cost("timeout")
            if await self._coins(s) < cost:
                s.phase = GamePhase.RESCUE_PROMPT
                s.rescue_reason = "NO_GOLD"
            else:
                self._show_banner(s, f"Time is up. Continue for {cost} gold.")

            logger.info(
                "question_timeout",
                extra={"game_id": s.id, "question_index": question_index, "phase": s.phase.value},
            )
            await self.save_session(s)

        await self._publish_reveal(s)
        return s

    async def _coins(self, s: GameSession) -> int:
        wallet = self._stores(s).wallet
        try:
            await wallet.refetch_wallet()
        except Exception:
            logger.warning("wallet_refresh_failed", exc_info=True, extra={"user_id": s.user_id})
        return wallet.coins

    # -- advancing ---------------------------------------------------------

    async def advance(self, game_id: str) -> GameSession:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if s.phase != GamePhase.REVEALING or s.selected_answer is None or s.is_animating:
                logger.info("advance_ignored", extra={"game_id": game_id, "phase": s.phase.value})
                return s

            if s.last_answer_correct:
                await self._next_question(s)
            else:
                await self._continue_after_mistake(s)
            await self.save_session(s)
            return s

    async def continue_after_rescue(self, game_id: str) -> GameSession:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if s.phase != GamePhase.RESCUE_PROMPT:
                return s
            await self._continue_after_mistake(s)
            await self.save_session(s)
            return s

    async def dismiss_rescue(self, game_id: str) -> GameSession:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if s.phase != GamePhase.RESCUE_PROMPT:
                return s
            await self._finish(s)
            await self.save_session(s)
            return s

    async def _continue_after_mistake(self, s: GameSession) -> None:
        stores = self._stores(s)
        cost = continue_cost(s.continue_type or "wrong")
        key = f"{s.id}-q{s.current_question_index}-continue"
        try:
            result = await self.ledger.spend_coins(
                s.user_id,
                cost,
                key,
                f"continue_after_{s.continue_type}",
                {"game_id": s.id, "question_index": s.current_question_index},
            )
        except Exception:
            logger.warning("continue_debit_failed", exc_info=True, extra={"game_id": s.id})
            self._show_banner(s, "Could not continue. Try again.")
            return

        if not result.applied:
            stores.wallet.reconcile(result.new_balance)
            s.phase = GamePhase.RESCUE_PROMPT
            s.rescue_reason = "NO_GOLD"
            s.error_banner = None
            logger.info("rescue_prompt_shown", extra={"game_id": s.id, "question_index": s.current_question_index})
            return

        stores.wallet.reconcile(result.new_balance)
        fire_and_forget(
            stores.wallet.broadcast("continue", coins_delta=-cost),
            name="broadcast",
            user_id=s.user_id,
        )
        await self._next_question(s)

    async def _next_question(self, s: GameSession) -> None:
        s.phase = GamePhase.ADVANCING
        s.is_animating = True
        s.error_banner = None
        await self.save_session(s)
        if self.animation_seconds:
            await asyncio.sleep(self.animation_seconds)

        if s.current_question_index + 1 >= len(s.questions):
            await self._finish(s)
            return

        s.current_question_index += 1
        s.selected_answer = None
        s.lifelines = LifelineState()
        s.continue_type = None
        s.rescue_reason = None
        s.question_start_time = now_ts()
        s.phase = GamePhase.ANSWERING
        s.is_animating = False
        self._start_timer(s)
        self._maybe_prefetch(s, self._stores(s))
        await self._publish_question(s)

    # -- helps -------------------------------------------------------------

    async def use_lifeline(self, game_id: str, help_type: HelpType) -> Tuple[GameSession, LifelineActivation]:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if s.phase != GamePhase.ANSWERING or s.is_animating:
                return s, LifelineActivation(help_type=help_type, outcome=LifelineOutcome.NOT_ALLOWED)

            activation = await self.lifelines.activate(s, help_type)
            if activation.new_balance is not None:
                self._stores(s).wallet.reconcile(activation.new_balance)
            if activation.outcome == LifelineOutcome.ACTIVATED:
                await self.save_session(s)
            return s, activation

    async def use_question_swap(self, game_id: str) -> GameSession:
        async with self._lock(game_id):
            s = await self._require(game_id)
            if s.phase != GamePhase.ANSWERING or s.is_animating or s.selected_answer is not None or s.swap_used:
                logger.info("swap_ignored", extra={"game_id": game_id, "phase": s.phase.value})
                return s

            question_index = s.current_question_index
            replacement = await self.bank.fetch_replacement(s.lang, [q.id for q in s.questions])

            cost = swap_cost(question_index)
            try:
                result = await self.ledger.spend_coins(
                    s.user_id,
                    cost,
                    f"{s.id}-swap",
                    "question_swap",
                    {"game_id": s.id, "question_index": question_index},
                )
            except Exception as exc:
                logger.warning("swap_debit_failed", exc_info=True, extra={"game_id": s.id})
                raise ServiceUnavailable("Could not swap the question, try again") from exc

            stores = self._stores(s)
            stores.wallet.reconcile(result.new_balance)
            if not result.applied:
                raise InsufficientFunds(
                    f"Not enough gold: {cost} needed",
                    details={"cost": cost, "coins": result.new_balance.coins},
                )

            s.questions[question_index] = replacement
            s.swap_used = True
            s.lifelines = LifelineState()
            s.question_start_time = now_ts()
            self._start_timer(s)
            await self.save_session(s)

        fire_and_forget(
            self.help_log.log_help_usage(s.user_id, "skip", question_index, cost),
            name="log_help_usage",
            game_id=s.id,
        )
        logger.info("question_swapped", extra={"game_id": s.id, "question_index": question_index, "cost": cost})
        await self._publish_question(s)
        return s

    # -- gestures ----------------------------------------------------------

    async def swipe_up(self, game_id: str) -> GameSession:
        gate = self._gate(game_id)
        if not gate.try_acquire():
            return await self._require(game_id)
        try:
            s = await self._require(game_id)
            if s.phase == GamePhase.FINISHED:
                return await self.restart_game_immediately(game_id)
            if s.phase == GamePhase.REVEALING:
                return await self.advance(game_id)
            return s
        finally:
            gate.release()

    async def swipe_down(self, game_id: str) -> GameSession:
        gate = self._gate(game_id)
        if not gate.try_acquire():
            return await self._require(game_id)
        try:
            return await self.restart_game_immediately(game_id)
        finally:
            gate.release()

    # -- internals ---------------------------------------------------------

    def _start_timer(self, s: GameSession) -> None:
        self._stop_timer(s.id)
        game_id, question_index = s.id, s.current_question_index
        timer = QuestionTimer(
            self.question_seconds,
            lambda: self.timeout(game_id, question_index),
            tick_seconds=self.tick_seconds,
        )
        self.timers[game_id] = timer.start()

    def _stop_timer(self, game_id: str) -> None:
        timer = self.timers.pop(game_id, None)
        if timer is not None:
            timer.cancel()

    def _maybe_prefetch(self, s: GameSession, stores: UserStores) -> None:
        if s.prefetch_triggered or s.current_question_index < self.prefetch_checkpoint:
            return
        s.prefetch_triggered = True
        stores.prefetch.trigger(s.lang)
        logger.info("prefetch_triggered", extra={"game_id": s.id, "question_index": s.current_question_index})

    def _show_banner(self, s: GameSession, message: str) -> None:
        s.error_banner = ErrorBanner(message=message, expires_at=now_ts() + self.banner_seconds)

    def _expire_banner(self, s: GameSession) -> None:
        if s.error_banner is not None and now_ts() >= s.error_banner.expires_at:
            s.error_banner = None

    def remaining_seconds(self, game_id: str) -> Optional[int]:
        timer = self.timers.get(game_id)
        return timer.remaining if timer is not None else None

    async def snapshot(self, game_id: str) -> dict:
        s = await self._require(game_id)
        return {
            "game": s,
            "lifelines_available": availability(s),
            "remaining_seconds": self.remaining_seconds(game_id),
            "pending_credit_keys": self.creditor.pending_keys(game_id),
        }

    async def _publish_question(self, s: GameSession):
        q = s.current_question
        await self.events.append(
            game_channel(s.id),
            {
                "type": "question",
                "question_index": s.current_question_index,
                "total_questions": len(s.questions),
                "question": {
                    "id": q.id,
                    "question": q.question,
                    "answers": [{"key": a.key, "text": a.text} for a in q.answers],
                },
            },
        )

    async def _publish_reveal(self, s: GameSession):
        await self.events.append(
            game_channel(s.id),
            {
                "type": "reveal",
                "question_index": s.current_question_index,
                "selected_answer": s.selected_answer,
                "correct_key": s.current_question.correct_key,
                "phase": s.phase.value,
                "coins_earned": s.coins_earned,
            },
        )


controller = GameController()
