"""
押注帳本：追蹤參與者的押注餘額與禮物單位

純資料 + 驗證，沒有自己的並發邏輯：
所有呼叫都發生在 RoundStateMachine 的單一轉換之內
"""
from decimal import Decimal, InvalidOperation
from typing import Iterable, Set

from core.exceptions import InvalidStakeError
from schemas import ParticipantSchema, RoundSchema, StakeItem


def total_weight(participant: ParticipantSchema) -> Decimal:
    """total_weight = stake_balance + Σ unit_value"""
    return participant.stake_balance + sum(
        (item.unit_value for item in participant.stake_items), Decimal("0")
    )


def total_pot(round_obj: RoundSchema) -> Decimal:
    return sum((total_weight(p) for p in round_obj.participants), Decimal("0"))


def staked_item_ids(round_obj: RoundSchema, exclude_participant: str = None) -> Set[str]:
    """回合內已被押注的禮物單位 id"""
    return {
        item.item_id
        for p in round_obj.participants
        if p.id != exclude_participant
        for item in p.stake_items
    }


def _as_amount(value) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidStakeError(f"Stake amount {value!r} is not a number") from e
    if not amount.is_finite():
        raise InvalidStakeError(f"Stake amount must be finite, got {value}")
    return amount


def add_stake(
    participant: ParticipantSchema,
    delta,
    items: Iterable[StakeItem],
    staked_elsewhere: Set[str]
) -> ParticipantSchema:
    """
    增加參與者的押注

    參數：
        participant: 參與者（會被直接修改）
        delta: 增加的餘額（>= 0）
        items: 要押注的禮物單位
        staked_elsewhere: 同回合內其他人已押注的 item_id

    返回：
        同一個 participant（方便串接）

    異常：
        InvalidStakeError:
            - delta 為負數或非有限數
            - 禮物的 unit_value <= 0 或非有限數
            - 禮物已在同回合被押注（或同一次押注重複列出）
            - 押注後 total_weight <= 0

    注意：
        所有驗證都在修改之前完成，失敗時 participant 不會被改動
    """
    amount = _as_amount(delta)
    if amount < 0:
        raise InvalidStakeError(f"Stake amount must not be negative, got {amount}")

    new_items = list(items)
    seen = set(staked_elsewhere)
    seen.update(item.item_id for item in participant.stake_items)
    for item in new_items:
        unit_value = _as_amount(item.unit_value)
        if unit_value <= 0:
            raise InvalidStakeError(
                f"Item {item.item_id} must have a positive value, got {unit_value}"
            )
        if item.item_id in seen:
            raise InvalidStakeError(f"Item {item.item_id} is already staked in this round")
        seen.add(item.item_id)

    resulting = total_weight(participant) + amount + sum(
        (item.unit_value for item in new_items), Decimal("0")
    )
    if resulting <= 0:
        raise InvalidStakeError("Stake must have a positive total value")

    participant.stake_balance = participant.stake_balance + amount
    participant.stake_items = participant.stake_items + new_items
    return participant
