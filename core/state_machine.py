"""
回合狀態機：集中管理回合的所有狀態轉換

狀態（只能往前走）：
    OPEN -> LOCKED -> DRAWING -> SETTLED -> (新的 OPEN 回合)

設計原則：
- 所有轉換都是純函式：輸入一個 RoundSchema，回傳新的 RoundSchema，
  原本的物件永遠不會被修改（失敗時不會留下改到一半的狀態）
- 共享儲存端（RoundManager）與客戶端的本地模擬（離線模式）使用同一套規則
- 跨客戶端的「只鎖定一次」由共享儲存的 compare-and-set 保證，這裡只驗證來源狀態
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Union
from uuid import uuid4
import logging

from models import LogKind, RoundStatus
from schemas import (
    EventLogEntrySchema,
    HistoryRecordSchema,
    ParticipantSchema,
    PlayerIdentity,
    RoundSchema,
    Stake,
)
from core.exceptions import (
    DrawFailedError,
    EmptyPoolError,
    InvalidStakeError,
    InvalidTransitionError,
    RoundFullError,
    RoundNotOpenError,
)
from services import draw_service, stake_service
from services.color_service import assign_color, resolve_display_name
from services.countdown_service import (
    can_draw,
    countdown_deadline,
    deadline_passed,
    should_start_countdown,
)
from services.history_service import build_history_record

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    RoundStatus.OPEN: {RoundStatus.LOCKED},
    RoundStatus.LOCKED: {RoundStatus.DRAWING},
    RoundStatus.DRAWING: {RoundStatus.SETTLED},
    RoundStatus.SETTLED: set(),
}


class DeadlineAction(str, Enum):
    NONE = "NONE"
    LOCK = "LOCK"
    CLEAR = "CLEAR"


@dataclass
class JoinOutcome:
    round: RoundSchema
    participant: ParticipantSchema
    log_entries: List[EventLogEntrySchema] = field(default_factory=list)
    is_new: bool = True


@dataclass
class Settlement:
    round: RoundSchema
    history: HistoryRecordSchema
    draw: Optional[draw_service.DrawResult] = None
    log_entries: List[EventLogEntrySchema] = field(default_factory=list)


def _log_entry(round_id: str, kind: LogKind, message: str, at: datetime,
               participant_id: Optional[str] = None) -> EventLogEntrySchema:
    return EventLogEntrySchema(
        id=str(uuid4()),
        round_id=round_id,
        participant_id=participant_id,
        kind=kind,
        message=message,
        at=at
    )


class RoundStateMachine:
    """回合狀態機"""

    def __init__(
        self,
        max_participants: int = 15,
        countdown_seconds: float = 60,
        settle_timeout_seconds: float = 30,
        draw_fn: Callable = draw_service.draw
    ):
        self.max_participants = max_participants
        self.countdown_seconds = countdown_seconds
        self.settle_timeout_seconds = settle_timeout_seconds
        self._draw = draw_fn

    @classmethod
    def from_settings(cls, settings) -> "RoundStateMachine":
        return cls(
            max_participants=settings.max_participants,
            countdown_seconds=settings.countdown_seconds,
            settle_timeout_seconds=settings.settle_timeout_seconds
        )

    # ------------------------------------------------------------------
    # 基本轉換
    # ------------------------------------------------------------------
    @staticmethod
    def can_transition(current: RoundStatus, target: RoundStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, set())

    @staticmethod
    def validate_transition(round_obj: RoundSchema, target: RoundStatus) -> None:
        """
        檢查狀態轉換是否合法

        異常：
            InvalidTransitionError: 來源狀態不允許轉換到 target
        """
        if not RoundStateMachine.can_transition(round_obj.status, target):
            raise InvalidTransitionError(round_obj.id, round_obj.status.value, target.value)

    @staticmethod
    def new_round(sequence_number: int, now: datetime, round_id: Optional[str] = None) -> RoundSchema:
        return RoundSchema(
            id=round_id or str(uuid4()),
            sequence_number=sequence_number,
            status=RoundStatus.OPEN,
            created_at=now
        )

    # ------------------------------------------------------------------
    # OPEN：加入
    # ------------------------------------------------------------------
    def join(
        self,
        round_obj: RoundSchema,
        identity: PlayerIdentity,
        stake: Stake,
        now: datetime
    ) -> JoinOutcome:
        """
        玩家加入回合（同一玩家再次加入視為加碼）

        前置條件：
        1. 回合狀態必須是 OPEN
        2. 新玩家加入時，參與者數量必須 < max_participants
        3. 押注必須通過 StakeService 驗證

        流程：
        1. 複製回合（不修改輸入）
        2. 找到或建立參與者
        3. 透過 StakeService 加入押注
        4. 第 2 位參與者加入時開始倒數
        5. 產生 JOIN 事件

        異常：
            RoundNotOpenError / RoundFullError / InvalidStakeError
        """
        if round_obj.status != RoundStatus.OPEN:
            raise RoundNotOpenError(round_obj.id, round_obj.status.value)

        updated = round_obj.model_copy(deep=True)
        participant_id = identity.participant_external_id
        participant = updated.participant(participant_id)
        is_new = participant is None

        if is_new:
            if len(updated.participants) >= self.max_participants:
                raise RoundFullError(round_obj.id, self.max_participants)
            position = len(updated.participants)
            participant = ParticipantSchema(
                id=participant_id,
                display_name=resolve_display_name(identity.display_name, participant_id),
                avatar_ref=identity.avatar_ref,
                joined_at=now,
                assigned_color=assign_color(position),
                position_index=position
            )

        stake_service.add_stake(
            participant,
            stake.balance,
            stake.items,
            stake_service.staked_item_ids(updated, exclude_participant=participant_id)
        )

        if is_new:
            updated.participants.append(participant)

        updated.total_pot_value = stake_service.total_pot(updated)

        if should_start_countdown(len(updated.participants), updated.countdown_deadline):
            updated.countdown_deadline = countdown_deadline(now, self.countdown_seconds)
            logger.info(
                f"Countdown started for round {updated.id}, deadline {updated.countdown_deadline.isoformat()}"
            )

        weight = stake_service.total_weight(participant)
        message = (
            f"{participant.display_name} joined with {weight}"
            if is_new else
            f"{participant.display_name} raised stake to {weight}"
        )
        entry = _log_entry(updated.id, LogKind.JOIN, message, now, participant_id)
        return JoinOutcome(round=updated, participant=participant, log_entries=[entry], is_new=is_new)

    # ------------------------------------------------------------------
    # OPEN：倒數
    # ------------------------------------------------------------------
    def check_deadline(self, round_obj: RoundSchema, now: datetime) -> DeadlineAction:
        """
        判斷倒數結束後該做什麼

        返回：
            LOCK：倒數結束且參與者 >= 2
            CLEAR：倒數結束但參與者 < 2（清除倒數，等下一位加入）
            NONE：其他情況
        """
        if round_obj.status != RoundStatus.OPEN or not deadline_passed(round_obj, now):
            return DeadlineAction.NONE
        if can_draw(round_obj):
            return DeadlineAction.LOCK
        return DeadlineAction.CLEAR

    def clear_countdown(self, round_obj: RoundSchema) -> RoundSchema:
        if round_obj.status != RoundStatus.OPEN:
            raise InvalidTransitionError(round_obj.id, round_obj.status.value, RoundStatus.OPEN.value)
        updated = round_obj.model_copy(deep=True)
        updated.countdown_deadline = None
        return updated

    # ------------------------------------------------------------------
    # OPEN -> LOCKED
    # ------------------------------------------------------------------
    def lock(self, round_obj: RoundSchema, now: datetime) -> RoundSchema:
        """
        鎖定回合（OPEN -> LOCKED）

        異常：
            InvalidTransitionError: 不是 OPEN，或參與者不足 2 人
        """
        self.validate_transition(round_obj, RoundStatus.LOCKED)
        if not can_draw(round_obj):
            raise InvalidTransitionError(round_obj.id, round_obj.status.value, RoundStatus.LOCKED.value)

        updated = round_obj.model_copy(deep=True)
        updated.status = RoundStatus.LOCKED
        updated.locked_at = now
        return updated

    def lock_entry(self, round_obj: RoundSchema, now: datetime) -> EventLogEntrySchema:
        return _log_entry(
            round_obj.id,
            LogKind.LOCK,
            f"Round #{round_obj.sequence_number} locked with {len(round_obj.participants)} participants",
            now
        )

    # ------------------------------------------------------------------
    # LOCKED -> DRAWING -> SETTLED
    # ------------------------------------------------------------------
    def settle(self, round_obj: RoundSchema, rng: Callable[[], float], now: datetime) -> Settlement:
        """
        抽獎並結算（LOCKED -> DRAWING -> SETTLED，視為單一邏輯單位）

        流程：
        1. 依加入順序快照參與者
        2. 透過 StakeService 計算權重
        3. 呼叫 DrawService 抽出贏家
        4. 寫入 winner_id / winner_probability / total_pot_value / settled_at
        5. 產生 DRAW、SETTLE 事件與 HistoryRecord

        異常：
            InvalidTransitionError: 回合不是 LOCKED
            DrawFailedError: 抽獎池為空（理論上不會發生），
                exc.settlement 為強制結算、無贏家、needs_inspection=True 的結果
        """
        self.validate_transition(round_obj, RoundStatus.DRAWING)

        updated = round_obj.model_copy(deep=True)
        updated.status = RoundStatus.DRAWING
        weights = [(p.id, stake_service.total_weight(p)) for p in updated.participants]
        updated.total_pot_value = stake_service.total_pot(updated)

        try:
            result = self._draw(weights, rng)
        except (EmptyPoolError, InvalidStakeError) as e:
            logger.error(f"Draw failed for round {round_obj.id}: {e}")
            settlement = self._force_settle(updated, now, e)
            raise DrawFailedError(round_obj.id, settlement, cause=e) from e

        updated.status = RoundStatus.SETTLED
        updated.winner_id = result.winner_id
        updated.winner_probability = draw_service.probability_percentage(result.probability)
        updated.settled_at = now

        winner = updated.participant(result.winner_id)
        entries = [
            _log_entry(
                updated.id,
                LogKind.DRAW,
                f"Drew r={result.r} (random={result.random_value}) of total {result.total}",
                now
            ),
            _log_entry(
                updated.id,
                LogKind.SETTLE,
                f"{winner.display_name} won {updated.total_pot_value} "
                f"with a {updated.winner_probability}% chance",
                now,
                result.winner_id
            ),
        ]
        return Settlement(
            round=updated,
            history=build_history_record(updated),
            draw=result,
            log_entries=entries
        )

    def settle_overdue(self, round_obj: RoundSchema, now: datetime) -> bool:
        """LOCKED / DRAWING 已經超過 settle_timeout_seconds 沒有結算"""
        if round_obj.status not in (RoundStatus.LOCKED, RoundStatus.DRAWING):
            return False
        since = round_obj.locked_at or round_obj.countdown_deadline or round_obj.created_at
        return (now - since).total_seconds() >= self.settle_timeout_seconds

    def force_settle(self, round_obj: RoundSchema, now: datetime, reason: str) -> Settlement:
        """
        無贏家的強制結算（LOCKED / DRAWING -> SETTLED）

        用在贏得鎖定的客戶端沒有完成結算時，結果標記 needs_inspection=True

        異常：
            InvalidTransitionError: 回合不是 LOCKED 或 DRAWING
        """
        if round_obj.status not in (RoundStatus.LOCKED, RoundStatus.DRAWING):
            raise InvalidTransitionError(round_obj.id, round_obj.status.value, RoundStatus.SETTLED.value)
        drawing = round_obj.model_copy(deep=True)
        drawing.total_pot_value = stake_service.total_pot(drawing)
        return self._force_settle(drawing, now, reason)

    def _force_settle(self, drawing: RoundSchema, now: datetime, cause: Union[Exception, str]) -> Settlement:
        forced = drawing.model_copy(deep=True)
        forced.status = RoundStatus.SETTLED
        forced.winner_id = None
        forced.winner_probability = None
        forced.needs_inspection = True
        forced.settled_at = now
        entry = _log_entry(
            forced.id,
            LogKind.INFO,
            f"Round #{forced.sequence_number} settled without a winner: {cause}",
            now
        )
        return Settlement(round=forced, history=build_history_record(forced), log_entries=[entry])

    # ------------------------------------------------------------------
    # SETTLED -> 新回合
    # ------------------------------------------------------------------
    def next_round(self, previous: RoundSchema, now: datetime, round_id: Optional[str] = None) -> RoundSchema:
        """
        建立下一個回合（sequence_number = previous + 1）

        異常：
            InvalidTransitionError: 上一個回合尚未結算
        """
        if previous.status != RoundStatus.SETTLED:
            raise InvalidTransitionError(previous.id, previous.status.value, RoundStatus.OPEN.value)
        return self.new_round(previous.sequence_number + 1, now, round_id)
