"""
ORM 與 Schema 之間的轉換

共享儲存回傳的資料一律在 session 關閉前轉成 schema，
離開儲存層之後不再出現 ORM 物件
"""
from typing import Any, Dict

from models import EventLog, HistoryRecord, Participant, Round
from schemas import (
    EventLogEntrySchema,
    HistoryRecordSchema,
    ParticipantSchema,
    RoundSchema,
    StakeItem,
)


class DataConverter:
    """Convert rows of the shared store into boundary schemas and change-feed payloads."""

    @staticmethod
    def participant_to_schema(participant: Participant) -> ParticipantSchema:
        return ParticipantSchema(
            id=participant.player_id,
            display_name=participant.display_name,
            avatar_ref=participant.avatar_ref,
            stake_balance=participant.stake_balance,
            stake_items=[
                StakeItem(item_id=item.item_id, unit_value=item.unit_value)
                for item in participant.items
            ],
            joined_at=participant.joined_at,
            assigned_color=participant.assigned_color,
            position_index=participant.position_index
        )

    @staticmethod
    def round_to_schema(round_obj: Round) -> RoundSchema:
        return RoundSchema(
            id=round_obj.id,
            sequence_number=round_obj.sequence_number,
            status=round_obj.status,
            participants=[
                DataConverter.participant_to_schema(p)
                for p in sorted(round_obj.participants, key=lambda p: p.position_index)
            ],
            countdown_deadline=round_obj.countdown_deadline,
            winner_id=round_obj.winner_id,
            winner_probability=round_obj.winner_probability,
            total_pot_value=round_obj.total_pot_value or 0,
            needs_inspection=bool(round_obj.needs_inspection),
            version=round_obj.version or 0,
            created_at=round_obj.created_at,
            locked_at=round_obj.locked_at,
            settled_at=round_obj.settled_at
        )

    @staticmethod
    def log_to_schema(entry: EventLog) -> EventLogEntrySchema:
        return EventLogEntrySchema(
            id=entry.id,
            round_id=entry.round_id,
            participant_id=entry.participant_id,
            kind=entry.kind,
            message=entry.message,
            at=entry.at
        )

    @staticmethod
    def history_to_schema(record: HistoryRecord) -> HistoryRecordSchema:
        return HistoryRecordSchema.model_validate(record, from_attributes=True)

    # ------------------------------------------------------------------
    # 變更通知的資料列
    # ------------------------------------------------------------------
    @staticmethod
    def round_row(round_schema: RoundSchema) -> Dict[str, Any]:
        """rounds 資料列（不含子表）"""
        return round_schema.model_dump(mode="json", exclude={"participants"})

    @staticmethod
    def participant_row(round_id: str, participant: ParticipantSchema) -> Dict[str, Any]:
        row = participant.model_dump(mode="json")
        row["round_id"] = round_id
        return row
