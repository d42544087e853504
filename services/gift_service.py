"""
禮物服務：禮物目錄與玩家庫存

每個 InventoryItem 是一個不可分割的禮物單位，item_id 在押注時直接使用
"""
from decimal import Decimal
from typing import Iterable, List

from sqlalchemy.orm import Session

from models import Gift, GiftRarity, InventoryItem, Player
from core.exceptions import GiftNotFound, PlayerNotFound

DEFAULT_GIFTS = [
    ("🎁", "Gift Box", "0.1", GiftRarity.COMMON),
    ("💎", "Diamond", "0.5", GiftRarity.RARE),
    ("⭐", "Star", "0.3", GiftRarity.COMMON),
    ("👑", "Crown", "1.0", GiftRarity.EPIC),
    ("🏆", "Trophy", "2.0", GiftRarity.LEGENDARY),
    ("💰", "Money Bag", "0.8", GiftRarity.EPIC),
    ("🎊", "Confetti", "0.2", GiftRarity.COMMON),
    ("🚀", "Rocket", "1.5", GiftRarity.LEGENDARY),
    ("🎪", "Circus", "0.4", GiftRarity.RARE),
    ("🌟", "Golden Star", "0.6", GiftRarity.RARE),
    ("💫", "Shooting Star", "1.2", GiftRarity.EPIC),
    ("🎯", "Target", "0.7", GiftRarity.RARE),
    ("🎨", "Art Palette", "0.9", GiftRarity.EPIC),
    ("🎭", "Theater Mask", "0.5", GiftRarity.RARE),
    ("🎡", "Carnival", "1.8", GiftRarity.LEGENDARY),
]


def seed_default_gifts(db: Session) -> int:
    """
    建立預設禮物目錄（已存在的 emoji 會略過）

    返回：
        新建立的禮物數量
    """
    existing = {emoji for (emoji,) in db.query(Gift.emoji).all()}
    created = 0
    for emoji, name, base_value, rarity in DEFAULT_GIFTS:
        if emoji in existing:
            continue
        db.add(Gift(emoji=emoji, name=name, base_value=Decimal(base_value), rarity=rarity))
        created += 1
    db.flush()  # 交由外層 transaction 處理 commit
    return created


def get_active_gifts(db: Session) -> List[Gift]:
    return db.query(Gift).filter(Gift.is_active == True).order_by(Gift.base_value).all()


def grant_gift(db: Session, player_id: str, gift_id: str, quantity: int = 1) -> List[InventoryItem]:
    """
    發放禮物給玩家（每個單位一筆 InventoryItem）

    異常：
        PlayerNotFound / GiftNotFound
    """
    if db.query(Player).filter(Player.id == player_id).first() is None:
        raise PlayerNotFound(player_id)
    gift = db.query(Gift).filter(Gift.id == gift_id).first()
    if gift is None:
        raise GiftNotFound(gift_id)

    items = [
        InventoryItem(player_id=player_id, gift_id=gift.id, unit_value=gift.base_value)
        for _ in range(quantity)
    ]
    db.add_all(items)
    db.flush()
    return items


def get_player_inventory(db: Session, player_id: str, include_staked: bool = False) -> List[InventoryItem]:
    query = db.query(InventoryItem).filter(InventoryItem.player_id == player_id)
    if not include_staked:
        query = query.filter(InventoryItem.staked_round_id.is_(None))
    return query.order_by(InventoryItem.acquired_at).all()


def reserve_items(db: Session, player_id: str, item_ids: Iterable[str], round_id: str) -> int:
    """
    把玩家庫存中的禮物單位標記為「押注中」

    不在庫存中的 item_id 直接略過（押注來源的驗證不屬於這裡）

    返回：
        實際標記的數量
    """
    item_ids = list(item_ids)
    if not item_ids:
        return 0
    reserved = db.query(InventoryItem).filter(
        InventoryItem.id.in_(item_ids),
        InventoryItem.player_id == player_id,
        InventoryItem.staked_round_id.is_(None)
    ).update({InventoryItem.staked_round_id: round_id}, synchronize_session=False)
    db.flush()
    return reserved


def transfer_staked_items(db: Session, round_id: str, winner_id: str = None) -> int:
    """
    回合結算後處理押注中的禮物

    - 有贏家：所有押注的禮物轉給贏家（贏家通吃）
    - 沒有贏家（強制結算）：禮物歸還原持有者

    返回：
        處理的禮物數量
    """
    values = {InventoryItem.staked_round_id: None}
    if winner_id is not None:
        values[InventoryItem.player_id] = winner_id

    moved = db.query(InventoryItem).filter(
        InventoryItem.staked_round_id == round_id
    ).update(values, synchronize_session=False)
    db.flush()
    return moved
