"""
Round Manager：共享儲存端的回合生命週期

職責：
1. 取得或建立目前的 OPEN 回合
2. 加入回合（行級鎖 + 狀態機驗證）
3. 條件式狀態轉換（compare-and-set）
4. 事件紀錄與歷史快照

原則：
- 共享儲存是唯一的真相來源，所有規則檢查都在 transaction 內重新做一次
- 規則本身不重寫：載入成 RoundSchema 後交給 RoundStateMachine 判斷
- 狀態轉換一律是 compare-and-set，輸掉競爭的請求只會拿到 False
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from models import (
    EventLog,
    HistoryRecord,
    LogKind,
    Participant,
    Round,
    RoundStatus,
    StakedItem,
)
from schemas import HistoryRecordSchema, PlayerIdentity, Stake
from core.converter import DataConverter
from core.exceptions import ConflictError, InvalidTransitionError, RoundNotFound
from core.locks import compare_and_set_status, with_round_lock
from core.player_manager import PlayerManager
from core.state_machine import JoinOutcome, RoundStateMachine
from database import transactional
from services.gift_service import reserve_items, transfer_staked_items
from services.history_service import get_recent_history
from services.stats_service import apply_gifts_won, apply_settlement_stats

logger = logging.getLogger(__name__)

# compare-and-set 時允許一起寫入的欄位
CAS_FIELDS = {
    "countdown_deadline",
    "locked_at",
    "settled_at",
    "winner_id",
    "winner_probability",
    "total_pot_value",
    "needs_inspection",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoundManager:
    """Round 生命週期管理器（共享儲存端）"""

    # ------------------------------------------------------------------
    # 查詢
    # ------------------------------------------------------------------
    @staticmethod
    def get_current_open_round(db: Session) -> Optional[Round]:
        """取得目前的 OPEN 回合（同一時間最多一個）"""
        return db.query(Round).filter(
            Round.status == RoundStatus.OPEN
        ).order_by(Round.sequence_number.desc()).first()

    @staticmethod
    def get_latest_round(db: Session) -> Optional[Round]:
        return db.query(Round).order_by(Round.sequence_number.desc()).first()

    @staticmethod
    def get_round_by_id(db: Session, round_id: str) -> Round:
        """
        透過 id 取得 Round

        異常：
            RoundNotFound: Round 不存在
        """
        round_obj = db.query(Round).filter(Round.id == round_id).first()
        if not round_obj:
            raise RoundNotFound(round_id)
        return round_obj

    @staticmethod
    def get_log_entries(db: Session, round_id: str) -> List[EventLog]:
        return db.query(EventLog).filter(
            EventLog.round_id == round_id
        ).order_by(EventLog.at, EventLog.id).all()

    @staticmethod
    def get_history(db: Session, limit: int = 20) -> List[HistoryRecord]:
        return get_recent_history(db, limit=limit)

    # ------------------------------------------------------------------
    # 建立回合
    # ------------------------------------------------------------------
    @staticmethod
    @transactional
    def create_round(db: Session, sequence_number: int, now: datetime = None) -> Round:
        """
        建立新的 OPEN 回合

        前置條件：
        1. 目前沒有 OPEN 回合
        2. sequence_number 沒有被使用過（資料庫唯一約束）

        異常：
            ConflictError: 已經有 OPEN 回合（呼叫端應改為讀取該回合）
            IntegrityError: sequence_number 重複（其他客戶端先建立了）
        """
        existing = RoundManager.get_current_open_round(db)
        if existing is not None:
            raise ConflictError(
                f"Round #{existing.sequence_number} is already open, cannot create #{sequence_number}"
            )

        now = now or _utcnow()
        round_obj = Round(
            sequence_number=sequence_number,
            status=RoundStatus.OPEN,
            created_at=now
        )
        db.add(round_obj)
        db.flush()  # 取得 round_obj.id

        db.add(EventLog(
            round_id=round_obj.id,
            kind=LogKind.INFO,
            message=f"Round #{sequence_number} opened",
            at=now
        ))

        logger.info(f"Created round {round_obj.id} (#{sequence_number})")
        return round_obj

    # ------------------------------------------------------------------
    # 加入回合
    # ------------------------------------------------------------------
    @staticmethod
    @transactional
    def join_round(
        db: Session,
        round_id: str,
        identity: PlayerIdentity,
        stake: Stake,
        machine: RoundStateMachine,
        now: datetime = None
    ) -> Tuple[Round, JoinOutcome]:
        """
        加入回合（或加碼）

        流程：
        1. 取得並鎖定 Round
        2. 建立或更新玩家
        3. 交給 RoundStateMachine 驗證並計算新狀態
        4. 寫入參與者、押注禮物、倒數截止時間
        5. 標記庫存中的禮物為押注中
        6. 記錄 JOIN 事件

        異常：
            RoundNotFound: Round 不存在
            RoundNotOpenError / RoundFullError / InvalidStakeError: 狀態機拒絕
        """
        now = now or _utcnow()

        # 1. 取得並鎖定 Round
        round_obj = with_round_lock(round_id, db).first()
        if not round_obj:
            raise RoundNotFound(round_id)

        # 2. 建立或更新玩家
        PlayerManager.upsert_player(db, identity)

        # 3. 狀態機驗證
        outcome = machine.join(DataConverter.round_to_schema(round_obj), identity, stake, now)
        joined = outcome.participant

        # 4. 寫入參與者
        participant = db.query(Participant).filter(
            Participant.round_id == round_id,
            Participant.player_id == joined.id
        ).first()

        if participant is None:
            participant = Participant(
                player_id=joined.id,
                display_name=joined.display_name,
                avatar_ref=joined.avatar_ref,
                stake_balance=joined.stake_balance,
                assigned_color=joined.assigned_color,
                position_index=joined.position_index,
                joined_at=joined.joined_at
            )
            round_obj.participants.append(participant)
            existing_items = 0
        else:
            participant.stake_balance = joined.stake_balance
            existing_items = len(participant.items)

        for index, item in enumerate(joined.stake_items[existing_items:], start=existing_items):
            participant.items.append(StakedItem(
                round_id=round_id,
                item_id=item.item_id,
                unit_value=item.unit_value,
                position_index=index
            ))

        round_obj.countdown_deadline = outcome.round.countdown_deadline
        round_obj.total_pot_value = outcome.round.total_pot_value
        round_obj.version = (round_obj.version or 0) + 1

        # 5. 標記庫存
        reserve_items(db, joined.id, [item.item_id for item in stake.items], round_id)

        # 6. 記錄事件
        for entry in outcome.log_entries:
            db.add(EventLog(
                id=entry.id,
                round_id=round_id,
                participant_id=entry.participant_id,
                kind=entry.kind,
                message=entry.message,
                at=entry.at
            ))

        db.flush()

        logger.info(
            f"Player {joined.id} joined round {round_id} "
            f"({len(outcome.round.participants)} participants)"
        )
        return round_obj, outcome

    # ------------------------------------------------------------------
    # 狀態轉換
    # ------------------------------------------------------------------
    @staticmethod
    @transactional
    def compare_and_set_status(
        db: Session,
        round_id: str,
        expected: RoundStatus,
        new: RoundStatus,
        extra_fields: Dict[str, Any] = None
    ) -> bool:
        """
        條件式狀態轉換

        expected == new 代表只更新欄位（例如清除倒數），仍然需要狀態符合

        返回：
            True 寫入成功 / False 狀態已被其他客戶端改變

        異常：
            InvalidTransitionError: expected -> new 不是合法轉換，或欄位不允許
            RoundNotFound: Round 不存在
        """
        if expected != new and not RoundStateMachine.can_transition(expected, new):
            raise InvalidTransitionError(round_id, expected.value, new.value)

        extra_fields = dict(extra_fields or {})
        unknown = set(extra_fields) - CAS_FIELDS
        if unknown:
            raise InvalidTransitionError(round_id, expected.value, f"{new.value} with {sorted(unknown)}")

        if compare_and_set_status(round_id, expected, new, db, extra_fields):
            logger.info(f"Round {round_id}: {expected.value} -> {new.value}")
            return True

        # 寫入失敗：確認是狀態不符還是回合不存在
        RoundManager.get_round_by_id(db, round_id)
        logger.info(f"Round {round_id}: compare-and-set {expected.value} -> {new.value} lost")
        return False

    # ------------------------------------------------------------------
    # 事件與歷史
    # ------------------------------------------------------------------
    @staticmethod
    @transactional
    def append_log_entry(
        db: Session,
        round_id: str,
        participant_id: Optional[str],
        kind: LogKind,
        message: str,
        at: datetime = None
    ) -> EventLog:
        """新增事件紀錄（只增不改）"""
        entry = EventLog(
            round_id=round_id,
            participant_id=participant_id,
            kind=kind,
            message=message,
            at=at or _utcnow()
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    @transactional
    def write_history_record(db: Session, record: HistoryRecordSchema) -> HistoryRecord:
        """
        寫入結算快照

        前置條件：
        1. 回合必須已經是 SETTLED
        2. 每個回合只能寫一次

        副作用：
            - 更新所有參與者的統計
            - 押注中的禮物轉給贏家（沒有贏家則歸還），並計入贏家的 total_gifts_won

        異常：
            ConflictError: 已經寫過
            InvalidTransitionError: 回合尚未結算
        """
        round_obj = RoundManager.get_round_by_id(db, record.round_id)
        if round_obj.status != RoundStatus.SETTLED:
            raise InvalidTransitionError(record.round_id, round_obj.status.value, "HISTORY")

        existing = db.query(HistoryRecord).filter(
            HistoryRecord.round_id == record.round_id
        ).first()
        if existing is not None:
            raise ConflictError(f"History for round {record.round_id} already written")

        payload = record.model_dump(mode="json")
        history = HistoryRecord(
            round_id=record.round_id,
            sequence_number=record.sequence_number,
            settled_at=record.settled_at,
            participants_snapshot=payload["participants_snapshot"],
            winner_id=record.winner_id,
            winner_probability=record.winner_probability,
            total_pot_value=record.total_pot_value
        )
        db.add(history)

        apply_settlement_stats(db, record)
        moved = transfer_staked_items(db, record.round_id, record.winner_id)
        if record.winner_id is not None:
            apply_gifts_won(db, record.winner_id, moved)

        db.flush()
        logger.info(
            f"History written for round #{record.sequence_number}: "
            f"winner={record.winner_id}, items moved={moved}"
        )
        return history
