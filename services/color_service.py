"""
顏色服務：為參與者分配輪盤上的顏色

純計算邏輯，不涉及狀態轉換
"""
from typing import Optional

# 回合上限 15 人，調色盤剛好 15 色，不會重複
PALETTE = [
    "#FF6B6B", "#4ECDC4", "#45B7D1", "#F9CA24", "#6C5CE7",
    "#A29BFE", "#FD79A8", "#00B894", "#E17055", "#0984E3",
    "#FDCB6E", "#E84393", "#00CEC9", "#D63031", "#55EFC4",
]


def assign_color(position_index: int) -> str:
    """
    依加入順序分配顏色

    邏輯：
    - 第 N 位參與者（從 0 開始）使用 PALETTE[N]
    - 超過調色盤大小時循環使用

    範例：
        assign_color(0) -> "#FF6B6B"
        assign_color(15) -> "#FF6B6B"
    """
    return PALETTE[position_index % len(PALETTE)]


def resolve_display_name(display_name: Optional[str], fallback_id: str) -> str:
    """宿主平台沒有提供名稱時，用 id 的前 8 碼當作顯示名稱"""
    if display_name and display_name.strip():
        return display_name.strip()
    return f"Player {fallback_id[:8]}"
