from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger("quizgame.errors")


class GameError(Exception):
    """Base class for errors surfaced to the player."""

    code = "GAME_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: Any | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class GameNotFound(GameError):
    code = "GAME_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class QuestionFetchError(GameError):
    """Fatal: a new game cannot start without a question set."""

    code = "QUESTION_FETCH_FAILED"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ServiceUnavailable(GameError):
    code = "SERVICE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AuthSessionMissing(GameError):
    code = "SESSION_MISSING"
    status_code = status.HTTP_401_UNAUTHORIZED


class InsufficientFunds(GameError):
    code = "INSUFFICIENT_FUNDS"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class NoVideoAvailable(GameError):
    code = "NO_VIDEO_AVAILABLE"
    status_code = status.HTTP_409_CONFLICT


def _build_error(*, code: str, message: str, details: Any | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        payload["details"] = details
    return payload


async def game_error_handler(request: Request, exc: GameError) -> JSONResponse:
    logger.info("game_error", extra={"route": request.url.path, "error_code": exc.code})
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_error(code=exc.code, message=exc.message, details=exc.details),
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_build_error(code="BAD_REQUEST", message=str(exc)),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GameError, game_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
