"""
Player API Endpoints

職責：
1. 登記宿主平台提供的玩家身分
2. 查詢玩家資訊、戰績與歷史
3. 禮物目錄與玩家庫存
"""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from database import get_db
from schemas import (
    GiftResponse,
    InventoryGrant,
    InventoryItemResponse,
    PlayerIdentity,
    PlayerResponse,
)
from core.player_manager import PlayerManager
from core.exceptions import GiftNotFound, PlayerNotFound
from services.gift_service import get_active_gifts, get_player_inventory, grant_gift
from services.history_service import get_player_round_history

router = APIRouter(prefix="/api", tags=["players"])
logger = logging.getLogger(__name__)


@router.post("/players", response_model=PlayerResponse)
def register_player(identity: PlayerIdentity, db: Session = Depends(get_db)):
    """
    登記玩家（已存在則更新名稱與頭像）

    流程：
    1. 以 participant_external_id 找到或建立 Player
    2. 返回玩家資訊與累計戰績
    """
    try:
        player = PlayerManager.get_or_create_player(db, identity)
        logger.info(f"Player {player.id} ({player.display_name}) registered")
        return PlayerResponse.model_validate(player)

    except Exception as e:
        logger.error(f"Failed to register player: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/players/{player_id}", response_model=PlayerResponse)
def get_player(player_id: str, db: Session = Depends(get_db)):
    try:
        return PlayerResponse.model_validate(PlayerManager.get_player_by_id(db, player_id))

    except PlayerNotFound:
        raise HTTPException(status_code=404, detail="Player not found")
    except Exception as e:
        logger.error(f"Failed to get player: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/players/{player_id}/history", response_model=List[Dict[str, Any]])
def get_player_history(
    player_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db)
):
    """
    取得玩家參與過的已結算回合（新的在前）

    返回：
        每筆包含自己的押注、勝率、是否獲勝，以及回合結果
    """
    try:
        PlayerManager.get_player_by_id(db, player_id)
        return get_player_round_history(player_id, db, limit=limit)

    except PlayerNotFound:
        raise HTTPException(status_code=404, detail="Player not found")
    except Exception as e:
        logger.error(f"Failed to get player history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/players/{player_id}/inventory", response_model=List[InventoryItemResponse])
def get_inventory(
    player_id: str,
    include_staked: bool = Query(False),
    db: Session = Depends(get_db)
):
    try:
        PlayerManager.get_player_by_id(db, player_id)
        items = get_player_inventory(db, player_id, include_staked=include_staked)
        return [InventoryItemResponse.model_validate(item) for item in items]

    except PlayerNotFound:
        raise HTTPException(status_code=404, detail="Player not found")
    except Exception as e:
        logger.error(f"Failed to get inventory: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/players/{player_id}/inventory", response_model=List[InventoryItemResponse])
def add_inventory(player_id: str, grant: InventoryGrant, db: Session = Depends(get_db)):
    """
    發放禮物給玩家

    每個單位建立一筆 InventoryItem，item id 之後可以直接拿來押注
    """
    try:
        items = grant_gift(db, player_id, grant.gift_id, grant.quantity)
        db.commit()
        for item in items:
            db.refresh(item)

        logger.info(f"Granted {grant.quantity} x gift {grant.gift_id} to player {player_id}")
        return [InventoryItemResponse.model_validate(item) for item in items]

    except PlayerNotFound:
        raise HTTPException(status_code=404, detail="Player not found")
    except GiftNotFound:
        raise HTTPException(status_code=404, detail="Gift not found")
    except Exception as e:
        logger.error(f"Failed to grant gift: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/gifts", response_model=List[GiftResponse])
def list_gifts(db: Session = Depends(get_db)):
    try:
        return [GiftResponse.model_validate(gift) for gift in get_active_gifts(db)]

    except Exception as e:
        logger.error(f"Failed to list gifts: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
