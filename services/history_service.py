"""
Round history service.

Builds the immutable snapshot written once per settled round, and the
per-player history the frontend renders from authoritative server data.
"""
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from models import HistoryRecord, RoundStatus
from schemas import HistoryRecordSchema, RoundSchema
from services.stake_service import total_weight


def build_history_record(round_obj: RoundSchema) -> HistoryRecordSchema:
    """
    Snapshot a settled round.

    The participant list is copied in join order so the draw can be
    re-verified later from the logged random value.
    """
    if round_obj.status != RoundStatus.SETTLED or round_obj.settled_at is None:
        raise ValueError(f"Round {round_obj.id} is not settled")

    return HistoryRecordSchema(
        round_id=round_obj.id,
        sequence_number=round_obj.sequence_number,
        settled_at=round_obj.settled_at,
        participants_snapshot=[p.model_copy(deep=True) for p in round_obj.participants],
        winner_id=round_obj.winner_id,
        winner_probability=round_obj.winner_probability,
        total_pot_value=round_obj.total_pot_value,
    )


def get_recent_history(db: Session, limit: int = 20) -> List[HistoryRecord]:
    """Most recent settled rounds first."""
    return (
        db.query(HistoryRecord)
        .order_by(HistoryRecord.sequence_number.desc())
        .limit(limit)
        .all()
    )


def get_player_round_history(player_id: str, db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    """
    Return the settled rounds a player took part in, newest first.

    Each entry carries the player's own stake and chance next to the round
    outcome so the frontend can show the full record without client-side
    storage.
    """
    history: List[Dict[str, Any]] = []

    # participants_snapshot is JSON, so filter in Python rather than in SQL.
    for record in get_recent_history(db, limit=limit * 4):
        schema = HistoryRecordSchema.model_validate(record, from_attributes=True)
        own = next((p for p in schema.participants_snapshot if p.id == player_id), None)
        if own is None:
            continue

        weight = total_weight(own)
        share = weight / schema.total_pot_value if schema.total_pot_value > 0 else None
        history.append({
            "round_id": schema.round_id,
            "sequence_number": schema.sequence_number,
            "settled_at": schema.settled_at,
            "your_stake": weight,
            "your_chance": share,
            "won": schema.winner_id == player_id,
            "winner_id": schema.winner_id,
            "winner_probability": schema.winner_probability,
            "total_pot_value": schema.total_pot_value,
        })
        if len(history) >= limit:
            break

    return history
