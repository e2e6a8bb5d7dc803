from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

AnswerKey = Literal["A", "B", "C"]
TIMEOUT_SENTINEL = "__timeout__"


class HelpType(str, Enum):
    FIFTY_FIFTY = "fifty_fifty"
    DOUBLE_ANSWER = "double_answer"
    AUDIENCE = "audience"


class GamePhase(str, Enum):
    IDLE = "idle"
    ANSWERING = "answering"
    REVEALING = "revealing"
    ADVANCING = "advancing"
    RESCUE_PROMPT = "rescue_prompt"
    FINISHED = "finished"
    OUT_OF_LIVES = "out_of_lives"


PLAYING_PHASES = {GamePhase.ANSWERING, GamePhase.REVEALING, GamePhase.ADVANCING, GamePhase.RESCUE_PROMPT}


class RewardContext(str, Enum):
    DAILY_GIFT = "daily_gift"
    END_GAME = "end_game"
    REFILL = "refill"
    RESCUE = "rescue"


class RewardSessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETING = "completing"
    CLOSED = "closed"


class Answer(BaseModel):
    key: AnswerKey
    text: str
    correct: bool = False


class Question(BaseModel):
    id: str
    question: str
    answers: List[Answer]
    topic: Optional[str] = None

    @model_validator(mode="after")
    def _check_answers(self) -> "Question":
        if len(self.answers) != 3:
            raise ValueError(f"question {self.id} must have exactly 3 answers")
        if len({a.key for a in self.answers}) != 3:
            raise ValueError(f"question {self.id} has duplicate answer keys")
        if sum(1 for a in self.answers if a.correct) != 1:
            raise ValueError(f"question {self.id} must have exactly one correct answer")
        return self

    @property
    def correct_key(self) -> str:
        return next(a.key for a in self.answers if a.correct)

    def is_correct(self, key: str) -> bool:
        return any(a.key == key and a.correct for a in self.answers)


class LifelineUsage(BaseModel):
    """Per-game activation counters, each capped at 2."""

    fifty_fifty: int = 0
    double_answer: int = 0
    audience: int = 0

    def count(self, help_type: HelpType) -> int:
        return getattr(self, help_type.value)


class LifelineState(BaseModel):
    """Per-question help state, cleared on every advance."""

    active: List[HelpType] = Field(default_factory=list)
    removed_answer: Optional[str] = None
    audience_votes: Dict[str, int] = Field(default_factory=dict)
    first_attempt: Optional[str] = None
    second_attempt: Optional[str] = None


class ErrorBanner(BaseModel):
    message: str
    expires_at: float


class GameSession(BaseModel):
    id: str
    user_id: str
    lang: str = "en"
    phase: GamePhase = GamePhase.IDLE
    questions: List[Question] = Field(default_factory=list)
    current_question_index: int = 0
    selected_answer: Optional[str] = None
    question_start_time: float = 0.0
    is_animating: bool = False

    correct_answers: int = 0
    response_times: List[float] = Field(default_factory=list)
    answer_results: List[bool] = Field(default_factory=list)
    coins_earned: int = 0
    reward_trigger: int = 0
    last_reward_amount: int = 0

    lifeline_usage: LifelineUsage = Field(default_factory=LifelineUsage)
    lifelines: LifelineState = Field(default_factory=LifelineState)

    continue_type: Optional[Literal["wrong", "timeout"]] = None
    rescue_reason: Optional[Literal["NO_GOLD", "NO_LIFE"]] = None
    error_banner: Optional[ErrorBanner] = None
    swap_used: bool = False
    prefetch_triggered: bool = False
    completed: bool = False
    exited: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def current_question(self) -> Question:
        return self.questions[self.current_question_index]

    @property
    def last_answer_correct(self) -> bool:
        # only meaningful while revealing, when the current question has been resolved
        return bool(self.answer_results) and self.answer_results[-1]


class GameResult(BaseModel):
    game_id: str
    user_id: str
    correct_answers: int
    total_questions: int
    coins_earned: int
    average_response_time: float
    completed: bool
    exited: bool = False
    question_analytics: List[dict] = Field(default_factory=list)
    completed_at: datetime = Field(default_factory=datetime.utcnow)


class Wallet(BaseModel):
    user_id: str
    coins: int = 0
    lives: int = 0
    max_lives: int = 15


class RewardLedgerEntry(BaseModel):
    idempotency_key: str
    user_id: str
    delta_coins: int = 0
    delta_lives: int = 0
    source: str
    metadata: dict = Field(default_factory=dict)
    balance_coins: int = 0
    balance_lives: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)


class RewardVideo(BaseModel):
    id: str
    embed_url: str
    platform: Literal["tiktok", "youtube", "instagram", "facebook"] = "youtube"


class RewardVideoSession(BaseModel):
    id: str
    user_id: str
    context: RewardContext
    target_reward: int = 0
    videos: List[RewardVideo] = Field(default_factory=list)
    required_count: int = 1
    state: RewardSessionState = RewardSessionState.IDLE
    outcome: Optional[Literal["success", "cancelled", "failed", "exited"]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def required_video_ids(self) -> List[str]:
        return [v.id for v in self.videos]
