from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional

from .db import settings
from .errors import register_exception_handlers
from .events import event_store, wallet_channel
from .game import controller
from .ledger import ledger
from .logging_config import setup_json_logging
from .questions import question_bank
from .reward_video import reward_service
from .schemas import (
    AdminUpsertQuestionsIn,
    AdminUpsertVideosIn,
    AnswerIn,
    CreditIn,
    GameStateOut,
    LifelineIn,
    LoginIn,
    LogoutIn,
    RewardCancelIn,
    RewardCompleteIn,
    RewardPreloadIn,
    RewardStartIn,
    StartGameIn,
    SwipeIn,
    TimeoutIn,
)
from .state import registry

setup_json_logging()

app = FastAPI(title="Quiz Game API")
register_exception_handlers(app)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


async def game_state(game_id: str) -> GameStateOut:
    snap = await controller.snapshot(game_id)
    user_id = snap["game"].user_id
    wallet = registry.get(user_id).wallet.balance if registry.is_logged_in(user_id) else None
    return GameStateOut.from_snapshot(snap, wallet)


@app.get("/api/events/{channel}")
async def list_events(channel: str, after: int | None = None, limit: int = 200):
    events = await event_store.list(channel, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


@app.post("/api/login")
async def login(payload: LoginIn):
    stores = await registry.login(payload.user_id, preload_videos=payload.preload_videos)
    return {"user_id": payload.user_id, "wallet": stores.wallet.balance}


@app.post("/api/logout")
async def logout(payload: LogoutIn):
    game_id = controller.active_games.get(payload.user_id)
    if game_id:
        await controller.exit_game(game_id)
    await registry.logout(payload.user_id)
    return {"ok": True}


@app.post("/api/game/start", response_model=GameStateOut)
async def start_game(payload: StartGameIn):
    s = await controller.start_game(payload.user_id, payload.lang, use_prefetched=payload.use_prefetched)
    return await game_state(s.id)


@app.get("/api/game/{game_id}", response_model=GameStateOut)
async def get_game(game_id: str):
    return await game_state(game_id)


@app.post("/api/game/{game_id}/answer", response_model=GameStateOut)
async def answer(game_id: str, payload: AnswerIn):
    await controller.select_answer(game_id, payload.question_index, payload.answer_key)
    return await game_state(game_id)


@app.post("/api/game/{game_id}/advance", response_model=GameStateOut)
async def advance(game_id: str):
    await controller.advance(game_id)
    return await game_state(game_id)


@app.post("/api/game/{game_id}/timeout", response_model=GameStateOut)
async def timeout(game_id: str, payload: TimeoutIn):
    await controller.timeout(game_id, payload.question_index)
    return await game_state(game_id)


@app.post("/api/game/{game_id}/lifeline")
async def lifeline(game_id: str, payload: LifelineIn):
    _, activation = await controller.use_lifeline(game_id, payload.help_type)
    return {"activation": activation, "game": await game_state(game_id)}


@app.post("/api/game/{game_id}/swap", response_model=GameStateOut)
async def swap(game_id: str):
    await controller.use_question_swap(game_id)
    return await game_state(game_id)


@app.post("/api/game/{game_id}/continue", response_model=GameStateOut)
async def continue_after_rescue(game_id: str):
    await controller.continue_after_rescue(game_id)
    return await game_state(game_id)


@app.post("/api/game/{game_id}/rescue/dismiss", response_model=GameStateOut)
async def dismiss_rescue(game_id: str):
    await controller.dismiss_rescue(game_id)
    return await game_state(game_id)


@app.post("/api/game/{game_id}/swipe", response_model=GameStateOut)
async def swipe(game_id: str, payload: SwipeIn):
    if payload.direction == "up":
        s = await controller.swipe_up(game_id)
    else:
        s = await controller.swipe_down(game_id)
    # a restart hands back the new game
    return await game_state(s.id)


@app.post("/api/game/{game_id}/restart", response_model=GameStateOut)
async def restart(game_id: str):
    s = await controller.restart_game_immediately(game_id)
    return await game_state(s.id)


@app.post("/api/game/{game_id}/finish", response_model=GameStateOut)
async def finish(game_id: str):
    await controller.finish_game(game_id)
    return await game_state(game_id)


@app.post("/api/game/{game_id}/exit", response_model=GameStateOut)
async def exit_game(game_id: str):
    await controller.exit_game(game_id)
    return await game_state(game_id)


@app.get("/api/wallet/{user_id}")
async def get_wallet(user_id: str):
    return await ledger.get_wallet(user_id)


@app.post("/api/wallet/credit")
async def credit_wallet(payload: CreditIn):
    result = await ledger.credit(
        payload.user_id,
        payload.delta_coins,
        payload.delta_lives,
        payload.idempotency_key,
        payload.source,
        payload.metadata,
    )
    if result.applied and not result.replayed:
        await event_store.append(
            wallet_channel(payload.user_id),
            {
                "type": "wallet:update",
                "source": payload.source,
                "coins_delta": payload.delta_coins,
                "lives_delta": payload.delta_lives,
            },
        )
    return result


@app.post("/api/reward/preload")
async def reward_preload(payload: RewardPreloadIn):
    store = registry.get(payload.user_id).reward_videos
    count = await store.preload()
    return {"queued": count}


@app.post("/api/reward/start")
async def reward_start(payload: RewardStartIn):
    store = registry.get(payload.user_id).reward_videos
    session = store.start(payload.context, payload.target_reward)
    if session is None:
        raise HTTPException(status_code=409, detail="A reward session is already active")
    return {"session": session}


@app.post("/api/reward/complete")
async def reward_complete(payload: RewardCompleteIn):
    store = registry.get(payload.user_id).reward_videos
    return await store.complete(payload.watched_video_ids)


@app.post("/api/reward/cancel")
async def reward_cancel(payload: RewardCancelIn):
    store = registry.get(payload.user_id).reward_videos
    return {"cancelled": store.cancel()}


@app.post("/api/admin/questions")
async def upsert_questions(payload: AdminUpsertQuestionsIn, _: None = Depends(require_admin)):
    count = await question_bank.upsert(payload.questions, payload.lang)
    return {"ok": True, "count": count}


@app.post("/api/admin/videos")
async def upsert_videos(payload: AdminUpsertVideosIn, _: None = Depends(require_admin)):
    count = await reward_service.add_videos(payload.videos)
    return {"ok": True, "count": count}


@app.get("/api/admin/verify")
async def verify(_: None = Depends(require_admin)):
    return {"ok": True}
