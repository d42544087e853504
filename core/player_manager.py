"""
Player Manager：管理玩家身分

職責：
1. 依宿主平台提供的身分建立或更新玩家
2. 查詢玩家資訊

原則：
- 身分資料視為不可變的外部輸入，不在回合中途重新驗證
- 玩家 id 直接使用 participant external id
"""
from sqlalchemy.orm import Session
import logging

from models import Player
from schemas import PlayerIdentity
from core.exceptions import PlayerNotFound
from database import transactional

logger = logging.getLogger(__name__)


class PlayerManager:
    """玩家生命週期管理器"""

    @staticmethod
    def upsert_player(db: Session, identity: PlayerIdentity) -> Player:
        """
        建立或更新玩家（不 commit，給其他 transaction 內部使用）

        參數：
            db: SQLAlchemy Session
            identity: 宿主平台提供的身分

        返回：
            Player object
        """
        player = db.query(Player).filter(
            Player.id == identity.participant_external_id
        ).first()

        if player is None:
            player = Player(
                id=identity.participant_external_id,
                display_name=identity.display_name,
                avatar_ref=identity.avatar_ref
            )
            db.add(player)
            db.flush()
            logger.info(f"Created player {player.id} ({player.display_name})")
            return player

        # 名稱或頭像有變更時同步更新
        if player.display_name != identity.display_name or player.avatar_ref != identity.avatar_ref:
            player.display_name = identity.display_name
            player.avatar_ref = identity.avatar_ref
            db.flush()

        return player

    @staticmethod
    @transactional
    def get_or_create_player(db: Session, identity: PlayerIdentity) -> Player:
        """
        建立或取得玩家

        參數：
            db: SQLAlchemy Session
            identity: 宿主平台提供的身分

        返回：
            Player object

        注意：
            - 使用 @transactional，自動處理 commit/rollback
        """
        return PlayerManager.upsert_player(db, identity)

    @staticmethod
    def get_player_by_id(db: Session, player_id: str) -> Player:
        """
        透過 id 取得玩家

        異常：
            PlayerNotFound: 玩家不存在
        """
        player = db.query(Player).filter(Player.id == player_id).first()
        if not player:
            raise PlayerNotFound(player_id)
        return player
