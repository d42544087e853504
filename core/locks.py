"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

兩種工具：
- 悲觀鎖：SELECT ... FOR UPDATE，用在「讀取 -> 驗證 -> 寫入」的加入流程
- Compare-and-set：UPDATE ... WHERE status = :expected，用在狀態轉換，
  只有狀態仍符合預期的那一個請求會成功，其他請求得到 rowcount = 0
"""
from typing import Any, Dict

from sqlalchemy.orm import Session, Query

from models import Round, RoundStatus


def with_round_lock(round_id: str, db: Session) -> Query:
    """
    鎖定一個 Round（行級鎖）

    使用場景：
    - 加入回合時（檢查人數、寫入參與者、設定倒數）
    - 需要確保 Round 在整個 transaction 期間不被其他請求修改

    範例：
        round_obj = with_round_lock(round_id, db).first()
        if not round_obj:
            raise RoundNotFound(round_id)

    參數：
        round_id: Round id
        db: SQLAlchemy Session

    返回：
        Query object（需要呼叫 .first() 或 .one() 來取得結果）

    注意：
        - nowait=False 表示如果鎖被佔用，會等待
        - SQLite 會忽略 FOR UPDATE（整個資料庫寫入本來就是序列化的）
        - 必須在 transaction 內使用（確保有 commit 或 rollback）
    """
    return db.query(Round).filter(
        Round.id == round_id
    ).with_for_update(nowait=False)


def compare_and_set_status(
    round_id: str,
    expected: RoundStatus,
    new: RoundStatus,
    db: Session,
    extra_fields: Dict[str, Any] = None
) -> bool:
    """
    條件式更新回合狀態（compare-and-set）

    只有當資料庫中的狀態仍然是 expected 時才會寫入 new，
    同時 version + 1（樂觀並發控制）

    參數：
        round_id: Round id
        expected: 預期的目前狀態
        new: 新狀態
        db: SQLAlchemy Session
        extra_fields: 一起寫入的欄位（例如 winner_id、settled_at）

    返回：
        True 如果這次寫入成功，False 如果狀態已被其他請求改變
    """
    values = {Round.status: new, Round.version: Round.version + 1}
    for key, value in (extra_fields or {}).items():
        values[getattr(Round, key)] = value

    updated = db.query(Round).filter(
        Round.id == round_id,
        Round.status == expected
    ).update(values, synchronize_session=False)
    return updated == 1
