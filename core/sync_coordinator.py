"""
同步協調器：共享儲存 <-> 客戶端本地鏡像

職責：
1. 啟動時取得或建立目前的 OPEN 回合
2. 訂閱變更通知（全域：OPEN 回合；範圍：目前回合的 row / participants / event_logs）
3. 收到通知後重新讀取回合並同步到本地鏡像（遠端永遠優先）
4. 提供 join / close_round / clear_countdown / advance_to_next_round / refresh，
   先做樂觀的本地更新，再以共享儲存的結果為準

原則：
- 共享儲存是唯一的真相來源；本地樂觀更新只為了反應速度
- 單調性：已確認的狀態不會倒退，序號較舊的通知直接丟棄
- 驗證錯誤與衝突在這一層處理完畢（轉為狀態更新），不往上拋
- 傳輸錯誤轉為 degraded_mode：該回合剩下的流程改為純本地模擬，不重試
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from pydantic import ValidationError as SchemaValidationError

from models import RoundStatus
from schemas import (
    ChangeEvent,
    ChildRow,
    EventLogEntrySchema,
    HistoryRecordSchema,
    ParticipantSchema,
    PlayerIdentity,
    RoundRow,
    RoundSchema,
    Stake,
)
from core.change_feed import ChangeFilter, Subscription
from core.exceptions import (
    ConflictError,
    DrawFailedError,
    InvalidTransitionError,
    RoundNotFound,
    TransportError,
    ValidationError,
)
from core.state_machine import DeadlineAction, RoundStateMachine, Settlement
from core.store import RoundStore

logger = logging.getLogger(__name__)


class CloseOutcome(str, Enum):
    SETTLED = "SETTLED"                      # 這個客戶端贏得鎖定並完成抽獎
    FORCE_SETTLED = "FORCE_SETTLED"          # 抽獎失敗，強制結算且無贏家
    LOST_RACE = "LOST_RACE"                  # 其他客戶端先鎖定，已同步對方的結果
    COUNTDOWN_CLEARED = "COUNTDOWN_CLEARED"  # 倒數結束但人數不足
    NOT_READY = "NOT_READY"                  # 倒數尚未結束或回合不是 OPEN


@dataclass
class JoinResult:
    success: bool
    participant: Optional[ParticipantSchema] = None
    error: Optional[str] = None
    degraded: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncCoordinator:
    """Bridges the shared round store and one client's local mirror."""

    def __init__(
        self,
        store: RoundStore,
        machine: RoundStateMachine,
        clock: Callable[[], datetime] = None,
        rng: Callable[[], float] = None
    ):
        self.store = store
        self.machine = machine
        self._clock = clock or _utcnow
        self._rng = rng or random.SystemRandom().random

        self.mirror: Optional[RoundSchema] = None
        self.degraded_mode = False
        self.log_entries: List[EventLogEntrySchema] = []
        self.local_history: List[HistoryRecordSchema] = []

        # 最後一次從共享儲存確認的狀態（單調性檢查以它為準，不看樂觀的 mirror）
        self._confirmed: Optional[RoundSchema] = None
        # 在本地模擬結算過的回合 id，遠端的同一個回合不再採用
        self._settled_locally: Optional[str] = None
        self._sink: Optional[Callable[[ChangeEvent], None]] = None
        self._global_subscription: Optional[Subscription] = None
        self._round_subscriptions: List[Subscription] = []
        self._pumps: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # 啟動 / 停止
    # ------------------------------------------------------------------
    async def start(self, sink: Callable[[ChangeEvent], None] = None) -> RoundSchema:
        """
        取得或建立目前的回合並開始訂閱

        參數：
            sink: 收到變更通知時呼叫（Session Controller 用它把通知放進事件佇列）；
                  沒有 sink 時協調器自己處理通知
        """
        self._sink = sink
        self._global_subscription = self._subscribe(
            ChangeFilter.field_equals("rounds", "status", RoundStatus.OPEN.value)
        )

        try:
            current = await self.fetch_or_create()
        except TransportError as e:
            self._enter_degraded(f"startup failed: {e}")
            current = self.machine.new_round(1, self._clock())

        self._adopt(current)
        return self.mirror

    async def stop(self) -> None:
        self._close_round_subscriptions()
        if self._global_subscription is not None:
            self._global_subscription.close()
            self._global_subscription = None
        for task in self._pumps:
            task.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        self._pumps = []

    def _subscribe(self, change_filter: ChangeFilter) -> Subscription:
        subscription = self.store.subscribe(change_filter)
        self._pumps.append(asyncio.create_task(self._pump(subscription)))
        return subscription

    async def _pump(self, subscription: Subscription) -> None:
        async for event in subscription:
            if self._sink is not None:
                self._sink(event)
                continue
            try:
                await self.handle_change(event)
            except Exception as e:
                logger.error(f"Failed to apply change on {event.table}: {e}", exc_info=True)

    def _close_round_subscriptions(self) -> None:
        for subscription in self._round_subscriptions:
            subscription.close()
        self._round_subscriptions = []

    def _subscribe_to_round(self, round_id: str) -> None:
        self._close_round_subscriptions()
        self._round_subscriptions = [
            self._subscribe(ChangeFilter.field_equals("rounds", "id", round_id)),
            self._subscribe(ChangeFilter.field_equals("participants", "round_id", round_id)),
            self._subscribe(ChangeFilter.field_equals("event_logs", "round_id", round_id)),
        ]

    async def fetch_or_create(self) -> RoundSchema:
        current = await self.store.fetch_current_open_round()
        if current is not None:
            return current

        latest = await self.store.fetch_latest_round()
        sequence_number = latest.sequence_number + 1 if latest else 1
        try:
            return await self.store.create_round(sequence_number)
        except ConflictError:
            # 其他客戶端先建立了
            current = await self.store.fetch_current_open_round()
            if current is None:
                raise
            logger.info(f"Lost round creation race, adopting round #{current.sequence_number}")
            return current

    def _adopt(self, round_schema: RoundSchema) -> None:
        previous_id = self.mirror.id if self.mirror else None
        self.mirror = round_schema
        self.log_entries = []
        if self.degraded_mode:
            self._confirmed = None
            self._close_round_subscriptions()
            return
        self._confirmed = round_schema
        self._settled_locally = None
        if round_schema.id != previous_id:
            self._subscribe_to_round(round_schema.id)
        logger.info(f"Now tracking round #{round_schema.sequence_number} ({round_schema.id})")

    def _enter_degraded(self, reason: str) -> None:
        if not self.degraded_mode:
            logger.warning(f"Shared store unavailable, switching to local simulation: {reason}")
        self.degraded_mode = True

    # ------------------------------------------------------------------
    # 變更通知與同步
    # ------------------------------------------------------------------
    async def handle_change(self, event: ChangeEvent) -> bool:
        """
        處理一則變更通知

        流程：
        1. 用明確的 schema 解析資料列，解析失敗直接丟棄
        2. 序號比目前回合舊的通知直接丟棄
        3. 重新讀取受影響的回合並同步

        返回：
            True 如果本地鏡像有變化
        """
        if self.degraded_mode or self.mirror is None:
            return False

        try:
            if event.table == "rounds":
                row = RoundRow.model_validate(event.row)
                round_id, sequence_number = row.id, row.sequence_number
            else:
                round_id, sequence_number = ChildRow.model_validate(event.row).round_id, None
        except SchemaValidationError as e:
            logger.warning(f"Dropping unparsable {event.table} row: {e.error_count()} errors")
            return False

        if sequence_number is not None and sequence_number < self.mirror.sequence_number:
            logger.debug(f"Discarding stale notification for round #{sequence_number}")
            return False
        if round_id == self._settled_locally:
            return False

        if round_id != self.mirror.id:
            if event.table != "rounds":
                return False
            return await self._handle_newer_round(round_id)

        try:
            fresh = await self.store.fetch_round(round_id)
            if event.table == "event_logs":
                self.log_entries = await self.store.fetch_log_entries(round_id)
        except TransportError as e:
            self._enter_degraded(f"refetch failed: {e}")
            return False

        if fresh is None:
            return False
        return self.reconcile(fresh)

    async def _handle_newer_round(self, round_id: str) -> bool:
        """
        出現序號更新的回合

        目前回合已結算：留給 advance_to_next_round 切換（先讓 UI 顯示贏家）
        目前回合未結算：先追上目前回合；仍未結算代表它已被放棄，直接切換
        """
        if self.mirror.status == RoundStatus.SETTLED:
            return False

        try:
            current = await self.store.fetch_round(self.mirror.id)
            newer = await self.store.fetch_round(round_id)
        except TransportError as e:
            self._enter_degraded(f"refetch failed: {e}")
            return False

        changed = self.reconcile(current) if current is not None else False
        if self.mirror.status == RoundStatus.SETTLED or newer is None:
            return changed

        logger.warning(
            f"Round #{self.mirror.sequence_number} was superseded by #{newer.sequence_number}"
        )
        self._adopt(newer)
        return True

    def reconcile(self, remote: RoundSchema) -> bool:
        """
        用遠端狀態覆蓋本地鏡像（遠端永遠優先於本地樂觀更新）

        丟棄條件（與最後確認的狀態比較）：
        - 屬於較舊的回合
        - 同一回合但狀態倒退，或 version 較舊
        - 本地已經模擬結算過的回合
        """
        if remote.id == self._settled_locally:
            return False
        confirmed = self._confirmed
        if confirmed is not None:
            if remote.sequence_number < confirmed.sequence_number:
                return False
            if remote.id == confirmed.id:
                if remote.status.rank < confirmed.status.rank:
                    logger.debug(
                        f"Ignoring backward status {remote.status.value} < {confirmed.status.value}"
                    )
                    return False
                if remote.status == confirmed.status and remote.version < confirmed.version:
                    return False

        changed = remote != self.mirror
        self._confirmed = remote
        self.mirror = remote
        return changed

    async def refresh(self) -> Optional[RoundSchema]:
        """重新讀取目前回合與事件紀錄（手動重新整理）"""
        if self.mirror is None or self.degraded_mode or self.mirror.id == self._settled_locally:
            return self.mirror
        try:
            fresh = await self.store.fetch_round(self.mirror.id)
            if fresh is not None:
                self.reconcile(fresh)
            self.log_entries = await self.store.fetch_log_entries(self.mirror.id)
        except TransportError as e:
            self._enter_degraded(f"refresh failed: {e}")
        return self.mirror

    # ------------------------------------------------------------------
    # 加入
    # ------------------------------------------------------------------
    async def join(self, identity: PlayerIdentity, stake: Stake) -> JoinResult:
        """
        加入目前的回合

        - 本地驗證失敗：直接回傳失敗，不呼叫共享儲存
        - 遠端驗證失敗 / 衝突：同步遠端狀態後回傳失敗
        - 傳輸失敗：保留樂觀狀態、回傳成功、進入 degraded_mode
        """
        if self.mirror is None:
            return JoinResult(success=False, error="No round is available")

        now = self._clock()
        try:
            outcome = self.machine.join(self.mirror, identity, stake, now)
        except ValidationError as e:
            logger.info(f"Join rejected locally for {identity.participant_external_id}: {e}")
            return JoinResult(success=False, error=str(e))

        round_id = self.mirror.id
        self.mirror = outcome.round

        if self.degraded_mode:
            self.log_entries.extend(outcome.log_entries)
            return JoinResult(success=True, participant=outcome.participant, degraded=True)

        try:
            participant = await self.store.join_round(round_id, identity, stake)
        except TransportError as e:
            self._enter_degraded(f"join failed: {e}")
            self.log_entries.extend(outcome.log_entries)
            return JoinResult(success=True, participant=outcome.participant, degraded=True)
        except (ValidationError, ConflictError, RoundNotFound) as e:
            logger.info(f"Join rejected by store for {identity.participant_external_id}: {e}")
            await self.refresh()
            return JoinResult(success=False, error=str(e))

        await self.refresh()
        return JoinResult(success=True, participant=participant)

    # ------------------------------------------------------------------
    # 倒數結束：鎖定 + 抽獎 + 結算
    # ------------------------------------------------------------------
    async def close_round(self, now: datetime = None) -> CloseOutcome:
        """
        倒數結束時關閉回合

        流程：
        1. compare-and-set OPEN -> LOCKED（輸了就同步對方的結果，不重試）
        2. 贏家重新讀取鎖定時的參與者
        3. 抽獎（只有贏得鎖定的客戶端會執行）
        4. compare-and-set LOCKED -> DRAWING -> SETTLED
        5. 寫入 LOCK / DRAW / SETTLE 事件與歷史紀錄
        """
        now = now or self._clock()
        if self.mirror is None:
            return CloseOutcome.NOT_READY

        action = self.machine.check_deadline(self.mirror, now)
        if action == DeadlineAction.CLEAR:
            await self.clear_countdown()
            return CloseOutcome.COUNTDOWN_CLEARED
        if action == DeadlineAction.NONE:
            return CloseOutcome.NOT_READY

        opened = self.mirror
        try:
            locked = self.machine.lock(opened, now)
        except InvalidTransitionError as e:
            logger.warning(f"Cannot lock round {opened.id}: {e}")
            return CloseOutcome.NOT_READY
        self.mirror = locked

        if self.degraded_mode:
            return self._settle_locally(locked, now)

        try:
            won = await self.store.compare_and_set_round_status(
                opened.id, RoundStatus.OPEN, RoundStatus.LOCKED, {"locked_at": now}
            )
        except ConflictError:
            won = False
        except TransportError as e:
            self._enter_degraded(f"lock failed: {e}")
            return self._settle_locally(locked, now)

        if not won:
            logger.info(f"Round #{opened.sequence_number} was locked by another client")
            await self.refresh()
            return CloseOutcome.LOST_RACE

        try:
            # 以鎖定當下的參與者為準（可能有本地還沒看到的加入）
            locked_remote = await self.store.fetch_round(opened.id)
            if locked_remote is not None:
                self.reconcile(locked_remote)
                locked = self.mirror
            entry = self.machine.lock_entry(locked, now)
            await self.store.append_log_entry(locked.id, None, entry.kind, entry.message)
        except TransportError as e:
            self._enter_degraded(f"lock follow-up failed: {e}")
            return self._settle_locally(locked, now)

        return await self._settle_remote(locked, now)

    async def _settle_remote(self, locked: RoundSchema, now: datetime) -> CloseOutcome:
        forced = False
        try:
            settlement = self.machine.settle(locked, self._rng, now)
        except DrawFailedError as e:
            logger.error(f"Round #{locked.sequence_number} force-settled: {e}")
            settlement = e.settlement
            forced = True

        self.mirror = settlement.round
        try:
            committed = await self._commit_settlement(locked, settlement)
        except TransportError as e:
            self._enter_degraded(f"settle failed: {e}")
            self._record_local_settlement(settlement)
            return CloseOutcome.FORCE_SETTLED if forced else CloseOutcome.SETTLED

        await self.refresh()
        if not committed:
            return CloseOutcome.LOST_RACE
        settled = settlement.round
        logger.info(
            f"Round #{settled.sequence_number} settled, winner={settled.winner_id} "
            f"({settled.winner_probability}%)"
        )
        return CloseOutcome.FORCE_SETTLED if forced else CloseOutcome.SETTLED

    async def _commit_settlement(self, current: RoundSchema, settlement: Settlement) -> bool:
        """
        把結算寫入共享儲存：compare-and-set (LOCKED ->) DRAWING -> SETTLED，再寫入事件與歷史紀錄

        返回：
            False 如果 compare-and-set 輸了（其他客戶端已經推進這個回合）
        """
        settled = settlement.round
        if current.status == RoundStatus.LOCKED:
            if not await self.store.compare_and_set_round_status(
                current.id, RoundStatus.LOCKED, RoundStatus.DRAWING
            ):
                logger.error(f"Round {current.id} left LOCKED before this client recorded the draw")
                return False

        if not await self.store.compare_and_set_round_status(
            current.id,
            RoundStatus.DRAWING,
            RoundStatus.SETTLED,
            {
                "winner_id": settled.winner_id,
                "winner_probability": settled.winner_probability,
                "total_pot_value": settled.total_pot_value,
                "settled_at": settled.settled_at,
                "needs_inspection": settled.needs_inspection,
            }
        ):
            logger.error(f"Round {current.id} left DRAWING before this client recorded the draw")
            return False

        for entry in settlement.log_entries:
            await self.store.append_log_entry(entry.round_id, entry.participant_id, entry.kind, entry.message)
        await self.store.write_history_record(settlement.history)
        return True

    async def recover_stalled_round(self, now: datetime = None) -> CloseOutcome:
        """
        鎖定後遲遲沒有結算的回合（贏得鎖定的客戶端在結算前離開）

        流程：
        1. LOCKED / DRAWING 超過 settle_timeout_seconds 才處理
        2. 重新讀取一次，已經結算就直接同步
        3. 仍未結算：強制結算（無贏家、needs_inspection=True、INFO 紀錄），
           compare-and-set 保證只有一個客戶端完成；degraded_mode 下只在本地結算
        """
        now = now or self._clock()
        if self.mirror is None or not self.machine.settle_overdue(self.mirror, now):
            return CloseOutcome.NOT_READY

        await self.refresh()
        stalled = self.mirror
        if stalled.status == RoundStatus.SETTLED:
            return CloseOutcome.LOST_RACE

        logger.warning(
            f"Round #{stalled.sequence_number} stuck in {stalled.status.value} for over "
            f"{self.machine.settle_timeout_seconds}s, settling without a winner"
        )
        settlement = self.machine.force_settle(
            stalled, now, f"draw not completed within {self.machine.settle_timeout_seconds}s of locking"
        )
        if self.degraded_mode:
            self._record_local_settlement(settlement)
            return CloseOutcome.FORCE_SETTLED

        try:
            committed = await self._commit_settlement(stalled, settlement)
        except TransportError as e:
            self._enter_degraded(f"forced settle failed: {e}")
            self._record_local_settlement(settlement)
            return CloseOutcome.FORCE_SETTLED

        await self.refresh()
        return CloseOutcome.FORCE_SETTLED if committed else CloseOutcome.LOST_RACE

    def _settle_locally(self, locked: RoundSchema, now: datetime) -> CloseOutcome:
        """degraded mode：同一套狀態機與抽獎引擎，純本地執行"""
        self.log_entries.append(self.machine.lock_entry(locked, now))
        forced = False
        try:
            settlement = self.machine.settle(locked, self._rng, now)
        except DrawFailedError as e:
            settlement = e.settlement
            forced = True
        self._record_local_settlement(settlement)
        logger.info(
            f"Round #{locked.sequence_number} settled locally, winner={settlement.round.winner_id}"
        )
        return CloseOutcome.FORCE_SETTLED if forced else CloseOutcome.SETTLED

    def _record_local_settlement(self, settlement: Settlement) -> None:
        self.mirror = settlement.round
        self._settled_locally = settlement.round.id
        self.log_entries.extend(settlement.log_entries)
        self.local_history.append(settlement.history)

    async def clear_countdown(self) -> None:
        """倒數結束但人數不足：清除倒數，回合維持 OPEN"""
        try:
            self.mirror = self.machine.clear_countdown(self.mirror)
        except InvalidTransitionError as e:
            logger.warning(f"Cannot clear countdown: {e}")
            return
        if self.degraded_mode:
            return

        try:
            await self.store.compare_and_set_round_status(
                self.mirror.id, RoundStatus.OPEN, RoundStatus.OPEN, {"countdown_deadline": None}
            )
        except TransportError as e:
            self._enter_degraded(f"clear countdown failed: {e}")
            return
        await self.refresh()

    # ------------------------------------------------------------------
    # 下一回合
    # ------------------------------------------------------------------
    async def advance_to_next_round(self) -> RoundSchema:
        """
        切換到下一個回合

        新回合一律重新嘗試共享儲存（degraded_mode 只持續到回合結束）；
        仍然無法連線時在本地建立 sequence_number + 1 的回合

        本地模擬結算過的回合在遠端可能仍是 OPEN，這個回合不會再被採用：
        倒數已過且人數足夠就代替其他參與者關閉它再取下一回合，
        否則維持已結算的鏡像（返回的仍是上一個回合），之後再試
        """
        previous = self.mirror
        if previous is not None and previous.status != RoundStatus.SETTLED:
            raise InvalidTransitionError(previous.id, previous.status.value, RoundStatus.OPEN.value)

        self.degraded_mode = False
        try:
            current = await self.fetch_or_create()
            if self._already_settled(current, previous):
                current = await self._close_left_open(current)
        except TransportError as e:
            self._enter_degraded(f"next round failed: {e}")
            if previous is None:
                current = self.machine.new_round(1, self._clock())
            else:
                current = self.machine.next_round(previous, self._clock())

        if current is None:
            return self.mirror
        self._adopt(current)
        return self.mirror

    def _already_settled(self, current: RoundSchema, previous: Optional[RoundSchema]) -> bool:
        return current.id == self._settled_locally or (previous is not None and current.id == previous.id)

    async def _close_left_open(self, stale: RoundSchema) -> Optional[RoundSchema]:
        """
        關閉遠端仍是 OPEN、但本地已經結算過的回合

        結果只寫入共享儲存，不會出現在這個客戶端的鏡像（這個客戶端已經公布過本地的結果）

        返回：
            新的回合；回合還不能關閉時返回 None
        """
        now = self._clock()
        if self.machine.check_deadline(stale, now) != DeadlineAction.LOCK:
            logger.info(f"Round #{stale.sequence_number} is still open in the shared store, waiting")
            return None

        closer = SyncCoordinator(self.store, self.machine, clock=self._clock, rng=self._rng)
        closer.reconcile(stale)
        outcome = await closer.close_round(now)
        if closer.degraded_mode:
            raise TransportError(f"closing round {stale.id} failed")
        logger.info(f"Closed round #{stale.sequence_number} left open in the shared store: {outcome.value}")

        current = await self.fetch_or_create()
        if self._already_settled(current, stale):
            return None
        return current
