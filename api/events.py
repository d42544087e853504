"""
Round Event Stream (SSE)

重點：
1. 每個連線先收到一次完整的回合快照，之後只推送變更
2. 變更來自共享儲存的 change feed（跨行程時經過 Redis pub/sub）
3. 超過 HEART_BEAT 秒沒有變更就送一次 keep-alive，連線中斷時關閉所有訂閱
"""
import asyncio
import json
import logging
from typing import AsyncGenerator, List

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from schemas import ChangeEvent
from core.change_feed import ChangeFilter, Subscription
from core.exceptions import TransportError
from core.sql_store import SqlRoundStore
from api.rounds import get_store

HEART_BEAT = 15

router = APIRouter(prefix="/api", tags=["events"])
logger = logging.getLogger(__name__)


class RoundEventStreamer:
    """Stream one round's changes to a browser as Server-Sent Events."""

    def __init__(self, store: SqlRoundStore, round_id: str):
        self.store = store
        self.round_id = round_id

    @staticmethod
    def _message(event: str, payload) -> str:
        return f"event: {event}\ndata: {json.dumps(payload)}\n\n"

    @staticmethod
    async def _forward(subscription: Subscription, merged: asyncio.Queue) -> None:
        async for event in subscription:
            merged.put_nowait(event)

    async def event_generator(self) -> AsyncGenerator[str, None]:
        """Event generator for one round.

        Sends the full round once, then a `round_update` whenever the round
        row changes, `participant_update` for participant rows and
        `log_entry` for new event log entries.
        """
        try:
            snapshot = await self.store.fetch_round(self.round_id)
        except TransportError as e:
            yield self._message("error", {"detail": str(e)})
            return
        if snapshot is None:
            yield self._message("error", {"detail": "Round not found"})
            return
        yield self._message("round_snapshot", snapshot.model_dump(mode="json"))

        merged: asyncio.Queue = asyncio.Queue()
        subscriptions: List[Subscription] = [
            self.store.subscribe(ChangeFilter.field_equals("rounds", "id", self.round_id)),
            self.store.subscribe(ChangeFilter.field_equals("participants", "round_id", self.round_id)),
            self.store.subscribe(ChangeFilter.field_equals("event_logs", "round_id", self.round_id)),
        ]
        forwarders = [asyncio.create_task(self._forward(s, merged)) for s in subscriptions]

        try:
            while True:
                try:
                    event: ChangeEvent = await asyncio.wait_for(merged.get(), timeout=HEART_BEAT)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue

                if event.table == "rounds":
                    try:
                        latest = await self.store.fetch_round(self.round_id)
                    except TransportError as e:
                        yield self._message("error", {"detail": str(e)})
                        return
                    if latest is not None:
                        yield self._message("round_update", latest.model_dump(mode="json"))
                elif event.table == "participants":
                    yield self._message("participant_update", event.row)
                else:
                    yield self._message("log_entry", event.row)

        finally:
            logger.info(f"Closing event stream for round {self.round_id}")
            for subscription in subscriptions:
                subscription.close()
            for task in forwarders:
                task.cancel()


@router.get("/rounds/{round_id}/events")
async def stream_round_events(round_id: str, store: SqlRoundStore = Depends(get_store)):
    streamer = RoundEventStreamer(store, round_id)

    return StreamingResponse(
        streamer.event_generator(),
        media_type="text/event-stream; charset=utf-8",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
