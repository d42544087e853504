"""
SQLAlchemy 實作的共享儲存

- 所有 DB 操作都在 worker thread 執行（asyncio.to_thread），不阻塞事件迴圈
- 每次呼叫都有逾時限制，逾時或連線失敗一律轉成 TransportError（不無限重試）
- 寫入成功後發布變更通知，讓所有訂閱的客戶端重新讀取並同步
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.orm import Session

from models import LogKind, RoundStatus
from schemas import (
    EventLogEntrySchema,
    HistoryRecordSchema,
    ParticipantSchema,
    PlayerIdentity,
    RoundSchema,
    Stake,
)
from core.change_feed import ChangeFeed, ChangeFilter, RedisChangeFeed, Subscription
from core.converter import DataConverter
from core.exceptions import ConflictError, RoundNotFound, TransportError
from core.round_manager import RoundManager
from core.state_machine import RoundStateMachine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqlRoundStore:
    """Shared round store backed by SQLAlchemy, publishing every write to a change feed."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        feed: Union[ChangeFeed, RedisChangeFeed, None] = None,
        machine: Optional[RoundStateMachine] = None,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = None
    ):
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()
        self.machine = machine or RoundStateMachine()
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _run(self, operation: str, work: Callable[[Session], T]) -> T:
        """
        在獨立的 session 中執行 work(db)

        異常對應：
            逾時 / 連線錯誤 -> TransportError
            唯一約束衝突     -> ConflictError
            其他業務異常     -> 原樣拋出
        """
        def run_in_session():
            db = self._session_factory()
            try:
                return work(db)
            finally:
                db.close()

        try:
            return await asyncio.wait_for(asyncio.to_thread(run_in_session), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Store call {operation} timed out after {self.timeout}s")
            raise TransportError(f"{operation} timed out") from e
        except IntegrityError as e:
            logger.warning(f"Store call {operation} conflicted: {e.orig}")
            raise ConflictError(f"{operation} conflicted with a concurrent write") from e
        except (OperationalError, InterfaceError, DisconnectionError) as e:
            logger.error(f"Store call {operation} failed: {e}")
            raise TransportError(f"{operation} failed: {e}") from e

    # ------------------------------------------------------------------
    # 讀取
    # ------------------------------------------------------------------
    async def fetch_current_open_round(self) -> Optional[RoundSchema]:
        def work(db):
            round_obj = RoundManager.get_current_open_round(db)
            return DataConverter.round_to_schema(round_obj) if round_obj else None
        return await self._run("fetch_current_open_round", work)

    async def fetch_round(self, round_id: str) -> Optional[RoundSchema]:
        def work(db):
            try:
                return DataConverter.round_to_schema(RoundManager.get_round_by_id(db, round_id))
            except RoundNotFound:
                return None
        return await self._run("fetch_round", work)

    async def fetch_latest_round(self) -> Optional[RoundSchema]:
        def work(db):
            round_obj = RoundManager.get_latest_round(db)
            return DataConverter.round_to_schema(round_obj) if round_obj else None
        return await self._run("fetch_latest_round", work)

    async def fetch_log_entries(self, round_id: str) -> List[EventLogEntrySchema]:
        def work(db):
            return [DataConverter.log_to_schema(e) for e in RoundManager.get_log_entries(db, round_id)]
        return await self._run("fetch_log_entries", work)

    async def fetch_history(self, limit: int = 20) -> List[HistoryRecordSchema]:
        def work(db):
            return [DataConverter.history_to_schema(r) for r in RoundManager.get_history(db, limit)]
        return await self._run("fetch_history", work)

    # ------------------------------------------------------------------
    # 寫入
    # ------------------------------------------------------------------
    async def create_round(self, sequence_number: int) -> RoundSchema:
        now = self._clock()

        def work(db):
            round_obj = RoundManager.create_round(db, sequence_number, now)
            return DataConverter.round_to_schema(round_obj)

        created = await self._run("create_round", work)
        await self.feed.publish("rounds", "insert", DataConverter.round_row(created))
        return created

    async def join_round(self, round_id: str, identity: PlayerIdentity, stake: Stake) -> ParticipantSchema:
        now = self._clock()

        def work(db):
            round_obj, outcome = RoundManager.join_round(db, round_id, identity, stake, self.machine, now)
            return DataConverter.round_to_schema(round_obj), outcome

        round_schema, outcome = await self._run("join_round", work)
        participant = round_schema.participant(outcome.participant.id) or outcome.participant

        await self.feed.publish(
            "participants",
            "insert" if outcome.is_new else "update",
            DataConverter.participant_row(round_id, participant)
        )
        await self.feed.publish("rounds", "update", DataConverter.round_row(round_schema))
        for entry in outcome.log_entries:
            await self.feed.publish("event_logs", "insert", entry.model_dump(mode="json"))
        return participant

    async def compare_and_set_round_status(
        self,
        round_id: str,
        expected: RoundStatus,
        new: RoundStatus,
        extra_fields: Optional[Dict[str, Any]] = None
    ) -> bool:
        def work(db):
            if not RoundManager.compare_and_set_status(db, round_id, expected, new, extra_fields):
                return None
            return DataConverter.round_to_schema(RoundManager.get_round_by_id(db, round_id))

        updated = await self._run("compare_and_set_round_status", work)
        if updated is None:
            return False
        await self.feed.publish("rounds", "update", DataConverter.round_row(updated))
        return True

    async def append_log_entry(
        self,
        round_id: str,
        participant_id: Optional[str],
        kind: LogKind,
        message: str
    ) -> EventLogEntrySchema:
        now = self._clock()

        def work(db):
            entry = RoundManager.append_log_entry(db, round_id, participant_id, kind, message, now)
            return DataConverter.log_to_schema(entry)

        entry = await self._run("append_log_entry", work)
        await self.feed.publish("event_logs", "insert", entry.model_dump(mode="json"))
        return entry

    async def write_history_record(self, record: HistoryRecordSchema) -> None:
        def work(db):
            RoundManager.write_history_record(db, record)

        await self._run("write_history_record", work)
        await self.feed.publish("history_records", "insert", record.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # 訂閱
    # ------------------------------------------------------------------
    def subscribe(self, change_filter: ChangeFilter) -> Subscription:
        return self.feed.subscribe(change_filter)
