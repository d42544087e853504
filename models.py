"""
資料庫模型（SQLAlchemy ORM）

對應共享儲存的資料表：
- players：玩家身分與統計
- gifts / inventory_items：禮物目錄與玩家持有的禮物單位
- rounds：輪盤回合（唯一的共享可變資源）
- participants / staked_items：回合參與者與押注的禮物
- event_logs：只增不改的事件紀錄
- history_records：每個結算回合一筆的不可變快照
"""
import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def _uuid() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoundStatus(str, enum.Enum):
    """回合狀態（只能往前走）"""
    OPEN = "OPEN"
    LOCKED = "LOCKED"
    DRAWING = "DRAWING"
    SETTLED = "SETTLED"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    RoundStatus.OPEN: 0,
    RoundStatus.LOCKED: 1,
    RoundStatus.DRAWING: 2,
    RoundStatus.SETTLED: 3,
}


class LogKind(str, enum.Enum):
    JOIN = "JOIN"
    LOCK = "LOCK"
    DRAW = "DRAW"
    SETTLE = "SETTLE"
    INFO = "INFO"


class GiftRarity(str, enum.Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class Player(Base):
    """玩家（id 即為宿主平台提供的 participant external id）"""
    __tablename__ = "players"

    id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=False)
    avatar_ref = Column(Text, nullable=True)
    total_rounds_played = Column(Integer, nullable=False, default=0)
    total_rounds_won = Column(Integer, nullable=False, default=0)
    total_value_won = Column(Numeric(18, 6), nullable=False, default=0)
    total_gifts_won = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    inventory = relationship("InventoryItem", back_populates="player")


class Gift(Base):
    """禮物目錄"""
    __tablename__ = "gifts"

    id = Column(String(36), primary_key=True, default=_uuid)
    emoji = Column(String(16), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    base_value = Column(Numeric(18, 6), nullable=False)
    rarity = Column(Enum(GiftRarity), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class InventoryItem(Base):
    """玩家持有的單一禮物單位（staked_round_id 不為空代表正在押注中）"""
    __tablename__ = "inventory_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    player_id = Column(String(64), ForeignKey("players.id"), nullable=False)
    gift_id = Column(String(36), ForeignKey("gifts.id"), nullable=False)
    unit_value = Column(Numeric(18, 6), nullable=False)
    staked_round_id = Column(String(36), ForeignKey("rounds.id"), nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    player = relationship("Player", back_populates="inventory")
    gift = relationship("Gift")

    __table_args__ = (
        Index("idx_inventory_items_player_id", "player_id"),
    )


class Round(Base):
    """輪盤回合"""
    __tablename__ = "rounds"

    id = Column(String(36), primary_key=True, default=_uuid)
    sequence_number = Column(Integer, nullable=False, unique=True)
    status = Column(Enum(RoundStatus), nullable=False, default=RoundStatus.OPEN)
    countdown_deadline = Column(DateTime(timezone=True), nullable=True)
    winner_id = Column(String(64), nullable=True)
    winner_probability = Column(Numeric(5, 2), nullable=True)  # 百分比，小數兩位
    total_pot_value = Column(Numeric(18, 6), nullable=False, default=0)
    needs_inspection = Column(Boolean, nullable=False, default=False)
    # 樂觀並發控制：每次寫入 +1
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    participants = relationship(
        "Participant",
        back_populates="round",
        order_by="Participant.position_index",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_rounds_status", "status"),
    )


class Participant(Base):
    """回合參與者（每位玩家每回合一筆，position_index 即加入順序）"""
    __tablename__ = "participants"

    id = Column(String(36), primary_key=True, default=_uuid)
    round_id = Column(String(36), ForeignKey("rounds.id", ondelete="CASCADE"), nullable=False)
    player_id = Column(String(64), nullable=False)
    display_name = Column(String(255), nullable=False)
    avatar_ref = Column(Text, nullable=True)
    stake_balance = Column(Numeric(18, 6), nullable=False, default=0)
    assigned_color = Column(String(7), nullable=False)
    position_index = Column(Integer, nullable=False)
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    round = relationship("Round", back_populates="participants")
    items = relationship(
        "StakedItem",
        back_populates="participant",
        order_by="StakedItem.position_index",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("round_id", "player_id", name="uq_participants_round_player"),
        Index("idx_participants_round_id", "round_id"),
    )


class StakedItem(Base):
    """參與者押注的禮物單位（同一回合內 item_id 不可重複）"""
    __tablename__ = "staked_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    participant_id = Column(String(36), ForeignKey("participants.id", ondelete="CASCADE"), nullable=False)
    round_id = Column(String(36), ForeignKey("rounds.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(String(64), nullable=False)
    unit_value = Column(Numeric(18, 6), nullable=False)
    position_index = Column(Integer, nullable=False, default=0)

    participant = relationship("Participant", back_populates="items")

    __table_args__ = (
        UniqueConstraint("round_id", "item_id", name="uq_staked_items_round_item"),
    )


class EventLog(Base):
    """事件紀錄（只新增，不修改、不刪除）"""
    __tablename__ = "event_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    round_id = Column(String(36), ForeignKey("rounds.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(64), nullable=True)
    kind = Column(Enum(LogKind), nullable=False)
    message = Column(Text, nullable=False)
    at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_event_logs_round_id", "round_id"),
        Index("idx_event_logs_at", "at"),
    )


class HistoryRecord(Base):
    """已結算回合的快照（每回合只寫一次）"""
    __tablename__ = "history_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    round_id = Column(String(36), ForeignKey("rounds.id"), nullable=False, unique=True)
    sequence_number = Column(Integer, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=False)
    participants_snapshot = Column(JSON, nullable=False)
    winner_id = Column(String(64), nullable=True)
    winner_probability = Column(Numeric(5, 2), nullable=True)
    total_pot_value = Column(Numeric(18, 6), nullable=False, default=0)
