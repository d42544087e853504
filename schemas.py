"""
Pydantic schemas

兩種用途：
1. 共享儲存邊界的明確結構（Participant / Round / EventLog / HistoryRecord），
   所有從儲存或變更通知進來的資料都要先通過這些 schema，
   不符合的資料直接拒絕，下游不做任何臨時的欄位存取
2. API request / response 與 UI projection
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import GiftRarity, LogKind, RoundStatus


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite 取回的 datetime 沒有時區，一律視為 UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============ 共享儲存邊界 ============

class StakeItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str = Field(min_length=1)
    unit_value: Decimal


class Stake(BaseModel):
    """一次加入所押的內容：餘額 + 禮物單位"""
    balance: Decimal = Decimal("0")
    items: List[StakeItem] = Field(default_factory=list)


class PlayerIdentity(BaseModel):
    """宿主平台提供的玩家身分（整個 session 內視為不可變）"""
    model_config = ConfigDict(frozen=True)

    participant_external_id: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=255)
    avatar_ref: Optional[str] = None


class ParticipantSchema(BaseModel):
    id: str
    display_name: str
    avatar_ref: Optional[str] = None
    stake_balance: Decimal = Field(default=Decimal("0"), ge=0)
    stake_items: List[StakeItem] = Field(default_factory=list)
    joined_at: datetime
    assigned_color: str
    position_index: int = Field(ge=0)

    @field_validator("joined_at")
    @classmethod
    def normalize_joined_at(cls, value):
        return _as_utc(value)


class RoundSchema(BaseModel):
    id: str
    sequence_number: int = Field(ge=1)
    status: RoundStatus
    participants: List[ParticipantSchema] = Field(default_factory=list)
    countdown_deadline: Optional[datetime] = None
    winner_id: Optional[str] = None
    winner_probability: Optional[Decimal] = None
    total_pot_value: Decimal = Decimal("0")
    needs_inspection: bool = False
    version: int = 0
    created_at: datetime
    locked_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    @field_validator("countdown_deadline", "created_at", "locked_at", "settled_at")
    @classmethod
    def normalize_times(cls, value):
        return _as_utc(value)

    def participant(self, participant_id: str) -> Optional[ParticipantSchema]:
        for p in self.participants:
            if p.id == participant_id:
                return p
        return None


class RoundRow(BaseModel):
    """變更通知中 rounds 資料列的最小結構（用來判斷是否過期）"""
    id: str
    sequence_number: int
    status: RoundStatus


class ChildRow(BaseModel):
    """participants / event_logs 資料列只需要知道屬於哪個回合"""
    round_id: str


class EventLogEntrySchema(BaseModel):
    id: str
    round_id: str
    participant_id: Optional[str] = None
    kind: LogKind
    message: str
    at: datetime

    @field_validator("at")
    @classmethod
    def normalize_at(cls, value):
        return _as_utc(value)


class HistoryRecordSchema(BaseModel):
    round_id: str
    sequence_number: int
    settled_at: datetime
    participants_snapshot: List[ParticipantSchema]
    winner_id: Optional[str] = None
    winner_probability: Optional[Decimal] = None
    total_pot_value: Decimal = Decimal("0")

    @field_validator("settled_at")
    @classmethod
    def normalize_settled_at(cls, value):
        return _as_utc(value)


class ChangeEvent(BaseModel):
    """共享儲存的資料列變更通知"""
    event_type: Literal["insert", "update", "delete"]
    table: str
    row: Dict[str, Any]


# ============ UI projection ============

class ParticipantView(BaseModel):
    id: str
    display_name: str
    weight_share: Decimal
    avatar_ref: Optional[str] = None
    assigned_color: str


class RoundProjection(BaseModel):
    sequence_number: int
    status: RoundStatus
    phase: str
    participants: List[ParticipantView]
    countdown_remaining: Optional[float] = None
    winner_id: Optional[str] = None
    winner_probability: Optional[Decimal] = None
    total_pot_value: Decimal = Decimal("0")
    offline: bool = False
    join_error: Optional[str] = None


# ============ API ============

class JoinRequest(BaseModel):
    player: PlayerIdentity
    balance: Decimal = Decimal("0")
    items: List[StakeItem] = Field(default_factory=list)


class JoinResponse(BaseModel):
    participant: ParticipantSchema
    round: RoundSchema


class CloseRoundResponse(BaseModel):
    outcome: str
    round: Optional[RoundSchema] = None


class PlayerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    display_name: str
    avatar_ref: Optional[str] = None
    total_rounds_played: int
    total_rounds_won: int
    total_value_won: Decimal
    total_gifts_won: int = 0


class GiftResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    emoji: str
    name: str
    base_value: Decimal
    rarity: GiftRarity


class InventoryItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    gift_id: str
    unit_value: Decimal
    staked_round_id: Optional[str] = None


class InventoryGrant(BaseModel):
    gift_id: str
    quantity: int = Field(default=1, ge=1, le=100)
