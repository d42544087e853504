"""
變更通知頻道（row-level change feed）

共享儲存在每次寫入成功後發布 ChangeEvent，
訂閱者用 {table, predicate} 過濾自己關心的資料列

- RedisChangeFeed：透過 Redis pub/sub 跨行程發布（每個資料表一個 channel），
  每個行程只訂閱一次，收到後在本地依 ChangeFilter 分送
- ChangeFeed：純行程內的分送，RedisChangeFeed 用它做本地分送，測試也直接使用

每個訂閱有自己的 asyncio.Queue，同一個訂閱內的通知保證依發布順序送達；
不同訂閱之間沒有全域順序保證
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError as SchemaValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from schemas import ChangeEvent

logger = logging.getLogger(__name__)

Predicate = Callable[[Dict[str, Any]], bool]


@dataclass(frozen=True)
class ChangeFilter:
    table: str
    predicate: Optional[Predicate] = None
    description: str = ""

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.predicate is None:
            return True
        try:
            return bool(self.predicate(event.row))
        except (KeyError, TypeError, ValueError):
            return False

    @classmethod
    def field_equals(cls, table: str, field: str, value: Any) -> "ChangeFilter":
        """相當於 `{field}=eq.{value}` 的過濾條件"""
        return cls(
            table=table,
            predicate=lambda row: row.get(field) == value,
            description=f"{table}:{field}=eq.{value}"
        )


class Subscription:
    """單一訂閱：async iterator，關閉後停止"""

    _CLOSED = object()

    def __init__(self, feed: "ChangeFeed", change_filter: ChangeFilter, maxsize: int = 0):
        self.feed = feed
        self.filter = change_filter
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Subscription {self.filter.description or self.filter.table} is full, dropping event")

    async def get(self) -> Optional[ChangeEvent]:
        item = await self.queue.get()
        if item is self._CLOSED:
            return None
        return item

    def get_nowait(self) -> Optional[ChangeEvent]:
        try:
            item = self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is self._CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.feed.unsubscribe(self)
        self.queue.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event




class ChangeFeed:
    """In-process publish/subscribe for row changes."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    async def start(self) -> None:
        return None

    def subscribe(self, change_filter: ChangeFilter, maxsize: int = 0) -> Subscription:
        subscription = Subscription(self, change_filter, maxsize=maxsize)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {change_filter.description or change_filter.table}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def publish(self, table: str, event_type: str, row: Dict[str, Any]) -> int:
        """
        發布變更通知

        返回：
            收到通知的訂閱數量
        """
        return self.dispatch(ChangeEvent(event_type=event_type, table=table, row=row))

    def dispatch(self, event: ChangeEvent) -> int:
        """把一則通知送給所有過濾條件符合的訂閱"""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.filter.matches(event):
                subscription.deliver(event)
                delivered += 1
        return delivered

    def close_all(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()

    async def close(self) -> None:
        self.close_all()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


TABLES = ("rounds", "participants", "event_logs", "history_records")


class RedisChangeFeed:
    """
    Change feed shared between server processes through Redis pub/sub.

    Every table has its own channel carrying ChangeEvent JSON. Each process
    holds one Redis subscription and fans events out to its local
    subscriptions, so ChangeFilter predicates run on the subscriber side.
    """

    def __init__(
        self,
        redis: Redis,
        channel_prefix: str = "wheel:changes",
        tables: Iterable[str] = TABLES,
        retry_delay: float = 1.0,
        owns_client: bool = False
    ):
        self.redis = redis
        self.channel_prefix = channel_prefix
        self.tables = tuple(tables)
        self.retry_delay = retry_delay
        self.local = ChangeFeed()
        self._owns_client = owns_client
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisChangeFeed":
        redis = Redis.from_url(url, decode_responses=True, health_check_interval=30)
        return cls(redis, owns_client=True, **kwargs)

    def channel(self, table: str) -> str:
        return f"{self.channel_prefix}:{table}"

    async def start(self) -> None:
        """訂閱所有資料表的 channel 並開始接收"""
        if self._listener is not None:
            return
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(*[self.channel(t) for t in self.tables])
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Listening for changes on {self.channel_prefix}:* ({len(self.tables)} channels)")

    async def _listen(self) -> None:
        while True:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=None)
            except RedisError as e:
                logger.warning(f"Change feed connection lost, retrying in {self.retry_delay}s: {e}")
                await asyncio.sleep(self.retry_delay)
                continue
            if msg and msg["type"] == "message":
                self.receive(msg["data"])

    def receive(self, payload) -> int:
        """解析一則 Redis 訊息並在本地分送；格式錯誤的訊息直接丟棄"""
        try:
            event = ChangeEvent.model_validate_json(payload)
        except SchemaValidationError as e:
            logger.warning(f"Dropping malformed change message: {e.error_count()} errors")
            return 0
        return self.local.dispatch(event)

    async def publish(self, table: str, event_type: str, row: Dict[str, Any]) -> int:
        """
        發布變更通知到 {channel_prefix}:{table}

        寫入已經成功，通知送不出去只記錄錯誤（訂閱者可以手動重新整理）

        返回：
            Redis 回報的接收者數量
        """
        event = ChangeEvent(event_type=event_type, table=table, row=row)
        try:
            return await self.redis.publish(self.channel(table), event.model_dump_json())
        except RedisError as e:
            logger.error(f"Failed to publish {table} {event_type}: {e}", exc_info=True)
            return 0

    def subscribe(self, change_filter: ChangeFilter, maxsize: int = 0) -> Subscription:
        return self.local.subscribe(change_filter, maxsize=maxsize)

    def close_all(self) -> None:
        self.local.close_all()

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        self.local.close_all()
        if self._owns_client:
            await self.redis.aclose()

    @property
    def subscription_count(self) -> int:
        return self.local.subscription_count
