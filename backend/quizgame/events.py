from __future__ import annotations

from typing import Any, List

from .db import ReturnDocument, db
from .utils import now_ts


def wallet_channel(user_id: str) -> str:
    return f"wallet:{user_id}"


def game_channel(game_id: str) -> str:
    return f"game:{game_id}"


class EventStore:
    """Persist broadcast events per channel so every open view can poll them.

    Wallet updates go to ``wallet:<user_id>`` so other views of the same
    account refresh their balance; game transitions go to ``game:<game_id>``.
    """

    def __init__(self, database: Any = None):
        database = database or db
        self.counters_collection = database.event_counters
        self.events_collection = database.events

    async def append(self, channel: str, payload: dict[str, Any]) -> int:
        """Store a new event on a channel and return its sequence number."""

        counter_doc = await self.counters_collection.find_one_and_update(
            {"_id": channel},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

        if not counter_doc or "seq" not in counter_doc:
            # Mongo-compatible providers may complete the upsert without
            # returning the document; read it back.
            counter_doc = await self.counters_collection.find_one({"_id": channel}) or {"seq": 1}

        seq = int(counter_doc.get("seq", 1))

        await self.events_collection.insert_one(
            {
                "channel": channel,
                "seq": seq,
                "timestamp": now_ts(),
                "payload": payload,
            }
        )
        return seq

    async def list(self, channel: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events on a channel that occur after the given sequence."""

        query: dict[str, Any] = {"channel": channel}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = (
            self.events_collection.find(query)
            .sort("seq", 1)
            .limit(limit)
        )

        events: List[dict[str, Any]] = []
        async for doc in cursor:
            events.append(
                {
                    "seq": doc["seq"],
                    "timestamp": doc.get("timestamp"),
                    "payload": doc.get("payload", {}),
                }
            )
        return events

    async def reset(self, channel: str) -> None:
        """Clear stored events on a channel and emit a reset marker."""

        await self.events_collection.delete_many({"channel": channel})

        counter_doc = await self.counters_collection.find_one({"_id": channel})
        if counter_doc is None:
            await self.counters_collection.insert_one({"_id": channel, "seq": 0})

        # Pollers discard derived state when they see this marker.
        await self.append(channel, {"type": "channel_reset"})


event_store = EventStore()
