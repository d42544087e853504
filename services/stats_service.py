"""
統計服務：回合結算後更新玩家戰績

純計算 + 欄位更新，不改變回合狀態（由 RoundManager 負責）
"""
from decimal import Decimal
from sqlalchemy.orm import Session

from models import Player
from schemas import HistoryRecordSchema


def apply_settlement_stats(db: Session, record: HistoryRecordSchema) -> None:
    """
    依結算快照更新玩家統計

    規則：
    - 所有參與者：total_rounds_played + 1
    - 贏家：total_rounds_won + 1，total_value_won 加上整個獎池

    注意：
        - 每個回合只能呼叫一次（由 history_records.round_id 的唯一性保證）
        - 不存在的玩家會被略過
        - Flush 但不 commit（讓外層 transaction 處理）
    """
    participant_ids = [p.id for p in record.participants_snapshot]
    if not participant_ids:
        return

    players = db.query(Player).filter(Player.id.in_(participant_ids)).all()
    for player in players:
        player.total_rounds_played = (player.total_rounds_played or 0) + 1
        if record.winner_id == player.id:
            player.total_rounds_won = (player.total_rounds_won or 0) + 1
            player.total_value_won = (player.total_value_won or Decimal("0")) + record.total_pot_value

    db.flush()



def apply_gifts_won(db: Session, winner_id: str, gift_count: int) -> None:
    """贏家收到的押注禮物數量累加到 total_gifts_won（不存在的玩家略過）"""
    if not gift_count:
        return
    player = db.get(Player, winner_id)
    if player is None:
        return
    player.total_gifts_won = (player.total_gifts_won or 0) + gift_count
    db.flush()
