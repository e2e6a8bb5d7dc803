from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional
from .models import TIMEOUT_SENTINEL, GameSession, HelpType, Question, RewardContext, RewardVideo, Wallet


class LoginIn(BaseModel):
    user_id: str
    preload_videos: bool = True


class LogoutIn(BaseModel):
    user_id: str


class StartGameIn(BaseModel):
    user_id: str
    lang: str = "en"
    use_prefetched: bool = False


class AnswerIn(BaseModel):
    question_index: int
    answer_key: str


class TimeoutIn(BaseModel):
    question_index: int


class LifelineIn(BaseModel):
    help_type: HelpType


class SwipeIn(BaseModel):
    direction: Literal["up", "down"]


class CreditIn(BaseModel):
    user_id: str
    delta_coins: int = 0
    delta_lives: int = 0
    idempotency_key: str = Field(min_length=1)
    source: str
    metadata: dict = Field(default_factory=dict)


class RewardPreloadIn(BaseModel):
    user_id: str


class RewardStartIn(BaseModel):
    user_id: str
    context: RewardContext
    target_reward: int = 0


class RewardCompleteIn(BaseModel):
    user_id: str
    watched_video_ids: List[str]


class RewardCancelIn(BaseModel):
    user_id: str


class AdminUpsertQuestionsIn(BaseModel):
    lang: str = "en"
    questions: List[Question]


class AdminUpsertVideosIn(BaseModel):
    videos: List[RewardVideo]


class PublicQuestionOut(BaseModel):
    id: str
    question: str
    answers: List[Dict[str, str]]


class GameStateOut(BaseModel):
    id: str
    user_id: str
    phase: str
    current_question_index: int
    total_questions: int
    question: Optional[PublicQuestionOut]
    selected_answer: Optional[str]
    correct_answer: Optional[str]
    correct_answers: int
    coins_earned: int
    reward_trigger: int
    last_reward_amount: int
    lifelines_available: Dict[str, bool]
    removed_answer: Optional[str]
    audience_votes: Dict[str, int]
    first_attempt: Optional[str] = None
    second_attempt: Optional[str] = None
    wrong_answers: List[str] = Field(default_factory=list)
    continue_type: Optional[str]
    rescue_reason: Optional[str]
    error_banner: Optional[str]
    swap_used: bool
    remaining_seconds: Optional[int]
    pending_credit_keys: List[str]
    wallet: Optional[Wallet] = None

    @classmethod
    def from_snapshot(cls, snap: dict, wallet: Optional[Wallet] = None) -> "GameStateOut":
        s: GameSession = snap["game"]
        q = s.current_question if s.questions else None
        revealed = s.selected_answer is not None and q is not None
        wrong: List[str] = []
        if revealed and s.selected_answer != TIMEOUT_SENTINEL:
            # with double answer both attempts are judged, otherwise just the selection
            attempts = [k for k in (s.lifelines.first_attempt, s.lifelines.second_attempt) if k]
            wrong = [k for k in attempts or [s.selected_answer] if not q.is_correct(k)]
        return cls(
            id=s.id,
            user_id=s.user_id,
            phase=s.phase.value,
            current_question_index=s.current_question_index,
            total_questions=len(s.questions),
            question=PublicQuestionOut(
                id=q.id,
                question=q.question,
                answers=[{"key": a.key, "text": a.text} for a in q.answers],
            ) if q else None,
            selected_answer=s.selected_answer,
            correct_answer=q.correct_key if revealed else None,
            correct_answers=s.correct_answers,
            coins_earned=s.coins_earned,
            reward_trigger=s.reward_trigger,
            last_reward_amount=s.last_reward_amount,
            lifelines_available=snap["lifelines_available"],
            removed_answer=s.lifelines.removed_answer,
            audience_votes=s.lifelines.audience_votes,
            first_attempt=s.lifelines.first_attempt,
            second_attempt=s.lifelines.second_attempt,
            wrong_answers=wrong,
            continue_type=s.continue_type,
            rescue_reason=s.rescue_reason,
            error_banner=s.error_banner.message if s.error_banner else None,
            swap_used=s.swap_used,
            remaining_seconds=snap["remaining_seconds"],
            pending_credit_keys=snap["pending_credit_keys"],
            wallet=wallet,
        )
