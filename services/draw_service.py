"""
抽獎服務：依押注權重抽出唯一贏家

純計算邏輯，不涉及 I/O 與狀態轉換

演算法（inverse-CDF，單次加權隨機選擇）：
    total = Σ weight
    r = rng() * total
    依「加入順序」累加權重，第一個累計值 >= r 的參與者獲勝

權重池的順序必須是回合的加入順序，不可依權重或 id 重新排序：
同樣的 (weights, r) 永遠得到同一個贏家，日後可以用紀錄下來的隨機值重新驗證
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Sequence, Tuple, Union

from core.exceptions import EmptyPoolError, InvalidStakeError

Number = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class DrawResult:
    winner_id: str
    probability: Decimal      # 贏家的中獎機率（0~1）
    random_value: Decimal     # rng() 的原始值，可用來重新驗證
    r: Decimal                # random_value * total
    total: Decimal


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # float 先轉 str，避免 Decimal(0.1) 的二進位誤差
    return Decimal(str(value))


def draw(
    weights: Sequence[Tuple[str, Number]],
    rng: Callable[[], float]
) -> DrawResult:
    """
    依權重抽出贏家

    參數：
        weights: [(participant_id, weight), ...]，順序即加入順序，weight 必須 > 0
        rng: 回傳 [0, 1) 均勻分布隨機數的函式

    返回：
        DrawResult

    異常：
        EmptyPoolError: 權重池為空或總權重 <= 0
        InvalidStakeError: 任一權重 <= 0
        ValueError: rng() 回傳值不在 [0, 1)

    範例：
        weights = [("a", 10), ("b", 90)]
        rng() = 0.05 -> r = 5  -> "a"，機率 0.1
        rng() = 0.50 -> r = 50 -> "b"，機率 0.9
    """
    pool = [(participant_id, _to_decimal(weight)) for participant_id, weight in weights]
    if not pool:
        raise EmptyPoolError("Cannot draw from an empty pool")

    for participant_id, weight in pool:
        if not weight.is_finite() or weight <= 0:
            raise InvalidStakeError(
                f"Weight for {participant_id} must be positive, got {weight}"
            )

    total = sum((weight for _, weight in pool), Decimal("0"))
    if total <= 0:
        raise EmptyPoolError(f"Total weight must be positive, got {total}")

    random_value = _to_decimal(rng())
    if not (Decimal("0") <= random_value < Decimal("1")):
        raise ValueError(f"rng() must return a value in [0, 1), got {random_value}")

    r = random_value * total
    return select_winner(pool, r, total, random_value)


def select_winner(
    pool: Sequence[Tuple[str, Decimal]],
    r: Decimal,
    total: Decimal,
    random_value: Decimal = None
) -> DrawResult:
    """
    給定 r，依序累加找出贏家（重新驗證歷史抽獎時也用這個函式）

    邊界值由累加順序決定：r 剛好等於某人的累計值時，較早加入者獲勝
    """
    cumulative = Decimal("0")
    winner_id, winner_weight = pool[-1]
    for participant_id, weight in pool:
        cumulative += weight
        if cumulative >= r:
            winner_id, winner_weight = participant_id, weight
            break

    return DrawResult(
        winner_id=winner_id,
        probability=winner_weight / total,
        random_value=random_value if random_value is not None else r / total,
        r=r,
        total=total
    )


def probability_percentage(probability: Decimal) -> Decimal:
    """把 0~1 的機率轉成兩位小數的百分比（例如 0.1 -> 10.00）"""
    return (probability * 100).quantize(Decimal("0.01"))
