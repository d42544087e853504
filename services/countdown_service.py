"""
倒數計時服務：判斷回合何時開始倒數、何時該鎖定

輪盤的倒數規則：
- 第 2 位參與者加入時開始倒數（固定 60 秒）
- 只有 1 位參與者時永遠不倒數
- 倒數結束時：
    - 參與者 >= 2：鎖定回合並抽獎
    - 參與者 < 2：清除倒數，等待下一位加入再重新開始
"""
from datetime import datetime, timedelta
from typing import Optional

from schemas import RoundSchema

MIN_PARTICIPANTS_TO_DRAW = 2


def should_start_countdown(participant_count: int, current_deadline: Optional[datetime]) -> bool:
    """
    檢查是否應該開始倒數

    參數：
        participant_count: 加入後的參與者數量
        current_deadline: 目前的倒數截止時間

    返回：
        True 如果人數剛好達到 2 人以上且尚未開始倒數
    """
    return participant_count >= MIN_PARTICIPANTS_TO_DRAW and current_deadline is None


def countdown_deadline(now: datetime, countdown_seconds: float) -> datetime:
    return now + timedelta(seconds=countdown_seconds)


def deadline_passed(round_obj: RoundSchema, now: datetime) -> bool:
    return round_obj.countdown_deadline is not None and now >= round_obj.countdown_deadline


def can_draw(round_obj: RoundSchema) -> bool:
    return len(round_obj.participants) >= MIN_PARTICIPANTS_TO_DRAW


def countdown_remaining(round_obj: RoundSchema, now: datetime) -> Optional[float]:
    """
    剩餘秒數（給 UI 顯示用）

    返回：
        None 如果尚未開始倒數，否則 >= 0 的秒數
    """
    if round_obj.countdown_deadline is None:
        return None
    return max(0.0, (round_obj.countdown_deadline - now).total_seconds())
