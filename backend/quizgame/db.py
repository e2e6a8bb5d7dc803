from __future__ import annotations

import asyncio
import copy
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo.errors import DuplicateKeyError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None

    QUESTIONS_PER_GAME: int = 10
    QUESTION_SECONDS: int = 10
    TICK_SECONDS: float = 1.0
    ADVANCE_ANIMATION_SECONDS: float = 0.5
    SWIPE_COOLDOWN_SECONDS: float = 0.1
    ERROR_BANNER_SECONDS: float = 3.0
    PREFETCH_CHECKPOINT: int = 9

    CREDIT_MAX_ATTEMPTS: int = 3
    CREDIT_RETRY_BASE_SECONDS: float = 0.2

    INITIAL_LIVES: int = 15
    VIDEO_PRELOAD_COUNT: int = 10
    VIDEO_REFILL_THRESHOLD: int = 3


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class ReturnDocument(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort_key: Optional[str] = None
        self._sort_direction: int = 1
        self._limit: Optional[int] = None
        self._materialised: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int):
        self._sort_key = key
        self._sort_direction = direction
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def _ensure_materialised(self):
        if self._materialised is not None:
            return

        docs = await self._collection._find_all(self._query)

        if self._sort_key is not None:
            reverse = self._sort_direction < 0
            docs.sort(key=lambda d: d.get(self._sort_key), reverse=reverse)

        if self._limit is not None:
            docs = docs[: self._limit]

        self._materialised = iter(docs)

    async def to_list(self) -> List[Dict[str, Any]]:
        return [doc async for doc in self]

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._ensure_materialised()
        assert self._materialised is not None
        try:
            return next(self._materialised)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    """Async, Mongo-shaped document collection.

    ``unique`` names a field, or a tuple of fields for a compound index, whose
    values must be unique across documents; inserting a second document with the
    same values raises ``DuplicateKeyError`` exactly as a unique index would on a
    real Mongo deployment.
    """

    def __init__(self, unique: Union[str, Tuple[str, ...], None] = None):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._unique: Tuple[str, ...] = (unique,) if isinstance(unique, str) else tuple(unique or ())

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Optional[Dict[str, Any]] = None):
        return InMemoryCursor(self, query or {})

    async def count_documents(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            return sum(1 for doc in self._docs if self._matches(doc, query))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update, inserting=True)
                self._check_unique(new_doc)
                self._docs.append(new_doc)

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._check_unique(document)
            self._docs.append(copy.deepcopy(document))

    async def delete_many(self, query: Dict[str, Any]):
        async with self._lock:
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: "ReturnDocument" = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    original = copy.deepcopy(doc)
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else original)

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update, inserting=True)
                self._check_unique(new_doc)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _check_unique(self, document: Dict[str, Any]) -> None:
        if not self._unique or any(field not in document for field in self._unique):
            return
        values = tuple(document[field] for field in self._unique)
        if any(tuple(doc.get(field) for field in self._unique) == values for doc in self._docs):
            raise DuplicateKeyError(f"E11000 duplicate key error: {self._unique}={values!r}")

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any], inserting: bool = False) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$setOnInsert":
                if inserting:
                    for key, value in payload.items():
                        doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                if "$gt" in expected:
                    if actual is None or actual <= expected["$gt"]:
                        return False
                elif "$gte" in expected:
                    if actual is None or actual < expected["$gte"]:
                        return False
                elif "$in" in expected:
                    if actual not in expected["$in"]:
                        return False
                elif "$nin" in expected:
                    if actual in expected["$nin"]:
                        return False
                else:  # pragma: no cover - extend as new operators are required
                    raise ValueError(f"Unsupported query operator(s): {expected}")
            else:
                if actual != expected:
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.games = InMemoryCollection()
        self.game_results = InMemoryCollection()
        self.questions = InMemoryCollection(unique="id")
        self.wallets = InMemoryCollection(unique="user_id")
        self.wallet_ledger = InMemoryCollection(unique=("user_id", "idempotency_key"))
        self.help_usage = InMemoryCollection()
        self.reward_sessions = InMemoryCollection(unique="id")
        self.reward_videos = InMemoryCollection(unique="id")
        self.event_counters = InMemoryCollection()
        self.events = InMemoryCollection()


db: Any = InMemoryDatabase()
