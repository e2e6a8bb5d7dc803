from __future__ import annotations

import logging
import random
from enum import Enum
from typing import Dict, NamedTuple, Optional

from pydantic import BaseModel

from .economy import HELP_REACTIVATION_COSTS, MAX_HELP_USES
from .ledger import HelpUsageLog, WalletLedger, help_log as default_help_log, ledger as default_ledger
from .models import GameSession, HelpType, LifelineState, Question, Wallet
from .utils import fire_and_forget

logger = logging.getLogger("quizgame.lifelines")

AUDIENCE_CORRECT_MIN = 65
AUDIENCE_CORRECT_SPREAD = 20


class LifelineOutcome(str, Enum):
    ACTIVATED = "activated"
    ALREADY_ACTIVE = "already_active"
    EXHAUSTED = "exhausted"
    NOT_ALLOWED = "not_allowed"
    INSUFFICIENT_GOLD = "insufficient_gold"
    DEBIT_FAILED = "debit_failed"


class LifelineActivation(BaseModel):
    help_type: HelpType
    outcome: LifelineOutcome
    cost: int = 0
    new_balance: Optional[Wallet] = None


class Attempt(NamedTuple):
    resolved: bool
    correct: bool
    key: Optional[str]


def fifty_fifty_target(question: Question) -> str:
    """The first incorrect answer in declared order."""

    return next(a.key for a in question.answers if not a.correct)


def audience_distribution(question: Question, rng: random.Random) -> Dict[str, int]:
    correct_key = question.correct_key
    correct_vote = AUDIENCE_CORRECT_MIN + rng.randrange(AUDIENCE_CORRECT_SPREAD)
    remaining = 100 - correct_vote

    wrong_keys = [a.key for a in question.answers if not a.correct]
    first = rng.randint(1, remaining - 1)
    second = remaining - first

    votes = {correct_key: correct_vote}
    votes[wrong_keys[0]] = min(first, second)
    votes[wrong_keys[1]] = max(first, second)
    return votes


def reactivation_cost(usage_count: int, help_type: HelpType) -> int:
    return 0 if usage_count == 0 else HELP_REACTIVATION_COSTS[help_type]


def is_available(session: GameSession, help_type: HelpType) -> bool:
    return (
        session.lifeline_usage.count(help_type) < MAX_HELP_USES
        and help_type not in session.lifelines.active
        and session.selected_answer is None
    )


def availability(session: GameSession) -> Dict[str, bool]:
    return {h.value: is_available(session, h) for h in HelpType}


def register_attempt(state: LifelineState, question: Question, key: str) -> Attempt:
    """Apply one selection while double answer is active.

    A wrong first attempt keeps the question open for a second one. A correct
    attempt, first or second, resolves as correct. Two wrong attempts resolve
    as wrong with both keys recorded.
    """

    if state.first_attempt is None:
        state.first_attempt = key
        if question.is_correct(key):
            return Attempt(True, True, key)
        return Attempt(False, False, key)

    if key == state.first_attempt or state.second_attempt is not None:
        return Attempt(False, False, None)

    state.second_attempt = key
    if question.is_correct(key):
        return Attempt(True, True, key)
    return Attempt(True, False, key)


class LifelineRegistry:
    def __init__(
        self,
        ledger: Optional[WalletLedger] = None,
        help_log: Optional[HelpUsageLog] = None,
        rng: Optional[random.Random] = None,
    ):
        self.ledger = ledger or default_ledger
        self.help_log = help_log or default_help_log
        self.rng = rng or random.Random()

    async def activate(self, session: GameSession, help_type: HelpType) -> LifelineActivation:
        usage = session.lifeline_usage.count(help_type)
        state = session.lifelines

        if session.selected_answer is not None:
            return LifelineActivation(help_type=help_type, outcome=LifelineOutcome.NOT_ALLOWED)
        if help_type in state.active:
            return LifelineActivation(help_type=help_type, outcome=LifelineOutcome.ALREADY_ACTIVE)
        if usage >= MAX_HELP_USES:
            return LifelineActivation(help_type=help_type, outcome=LifelineOutcome.EXHAUSTED)

        cost = reactivation_cost(usage, help_type)
        new_balance = None
        if cost:
            key = f"{session.id}-{help_type.value}-{usage + 1}"
            try:
                result = await self.ledger.spend_coins(
                    session.user_id,
                    cost,
                    key,
                    f"help_{help_type.value}",
                    {"game_id": session.id, "question_index": session.current_question_index},
                )
            except Exception:
                logger.warning(
                    "lifeline_debit_failed",
                    exc_info=True,
                    extra={"game_id": session.id, "help_type": help_type.value, "cost": cost},
                )
                return LifelineActivation(help_type=help_type, outcome=LifelineOutcome.DEBIT_FAILED, cost=cost)
            if not result.applied:
                return LifelineActivation(
                    help_type=help_type,
                    outcome=LifelineOutcome.INSUFFICIENT_GOLD,
                    cost=cost,
                    new_balance=result.new_balance,
                )
            new_balance = result.new_balance

        self._apply(session, help_type)
        setattr(session.lifeline_usage, help_type.value, usage + 1)

        logger.info(
            "lifeline_activated",
            extra={
                "game_id": session.id,
                "help_type": help_type.value,
                "question_index": session.current_question_index,
                "cost": cost,
            },
        )
        fire_and_forget(
            self.help_log.log_help_usage(session.user_id, help_type.value, session.current_question_index, cost),
            name="log_help_usage",
            game_id=session.id,
        )
        return LifelineActivation(
            help_type=help_type,
            outcome=LifelineOutcome.ACTIVATED,
            cost=cost,
            new_balance=new_balance,
        )

    def _apply(self, session: GameSession, help_type: HelpType) -> None:
        state = session.lifelines
        question = session.current_question
        state.active.append(help_type)
        if help_type == HelpType.FIFTY_FIFTY:
            state.removed_answer = fifty_fifty_target(question)
        elif help_type == HelpType.DOUBLE_ANSWER:
            state.first_attempt = None
            state.second_attempt = None
        elif help_type == HelpType.AUDIENCE:
            state.audience_votes = audience_distribution(question, self.rng)
