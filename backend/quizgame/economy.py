from __future__ import annotations

from .models import HelpType, RewardContext

START_GAME_REWARD = 1

CONTINUE_AFTER_WRONG_COST = 5
TIMEOUT_CONTINUE_COST = 15

# Second activation of a help within one game.
HELP_REACTIVATION_COSTS: dict[HelpType, int] = {
    HelpType.FIFTY_FIFTY: 15,
    HelpType.DOUBLE_ANSWER: 20,
    HelpType.AUDIENCE: 25,
}
MAX_HELP_USES = 2

REFILL_VIDEO_COINS = 500
REFILL_VIDEO_LIVES = 5
RESCUE_VIDEO_LIVES = 1

VIDEOS_REQUIRED: dict[RewardContext, int] = {
    RewardContext.DAILY_GIFT: 1,
    RewardContext.END_GAME: 1,
    RewardContext.REFILL: 2,
    RewardContext.RESCUE: 1,
}


def coins_for_question(question_index: int) -> int:
    if 0 <= question_index <= 3:
        return 1
    if 4 <= question_index <= 8:
        return 3
    if 9 <= question_index <= 13:
        return 5
    if question_index == 14:
        return 55
    return 0


def swap_cost(question_index: int) -> int:
    if question_index >= 10:
        return 30
    if question_index >= 5:
        return 20
    return 10


def continue_cost(continue_type: str) -> int:
    return TIMEOUT_CONTINUE_COST if continue_type == "timeout" else CONTINUE_AFTER_WRONG_COST


def video_reward(context: RewardContext, target_reward: int) -> tuple[int, int]:
    """Return ``(coins, lives)`` granted for a completed reward video session."""

    if context == RewardContext.REFILL:
        return REFILL_VIDEO_COINS, REFILL_VIDEO_LIVES
    if context == RewardContext.RESCUE:
        return TIMEOUT_CONTINUE_COST, RESCUE_VIDEO_LIVES
    # daily gift and end of game double a base that was already credited
    return max(target_reward, 0), 0
