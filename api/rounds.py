"""
Round API Endpoints

重點：
1. 所有寫入都經過共享儲存（SqlRoundStore），規則由 RoundStateMachine 判斷
2. 關閉回合走和客戶端一樣的 compare-and-set 流程，多個請求同時關閉也只會抽一次
3. 客戶端靠 /events（SSE）或重新讀取 /current 取得更新
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request

import logging

from models import RoundStatus
from schemas import (
    CloseRoundResponse,
    EventLogEntrySchema,
    HistoryRecordSchema,
    JoinRequest,
    JoinResponse,
    RoundSchema,
    Stake,
)
from core.exceptions import (
    ConflictError,
    RoundNotFound,
    TransportError,
    ValidationError,
)
from core.sql_store import SqlRoundStore
from core.state_machine import RoundStateMachine
from core.sync_coordinator import CloseOutcome, SyncCoordinator

router = APIRouter(prefix="/api", tags=["rounds"])
logger = logging.getLogger(__name__)


def get_store(request: Request) -> SqlRoundStore:
    return request.app.state.store


def get_machine(request: Request) -> RoundStateMachine:
    return request.app.state.machine


@router.get("/rounds/current", response_model=RoundSchema)
async def get_current_round(store: SqlRoundStore = Depends(get_store)):
    """
    取得目前的 OPEN 回合

    返回：
        完整的回合資料（含參與者，依加入順序）
    """
    try:
        current = await store.fetch_current_open_round()
        if current is None:
            raise HTTPException(status_code=404, detail="No open round")
        return current

    except HTTPException:
        raise
    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get current round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/rounds/current", response_model=RoundSchema)
async def get_or_create_current_round(
    store: SqlRoundStore = Depends(get_store),
    machine: RoundStateMachine = Depends(get_machine)
):
    """
    取得或建立目前的 OPEN 回合

    流程：
    1. 已有 OPEN 回合就直接返回
    2. 否則以最新回合的 sequence_number + 1 建立
    3. 建立時輸給其他請求，改為讀取對方建立的回合
    """
    try:
        return await SyncCoordinator(store, machine).fetch_or_create()

    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get or create round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/rounds/{round_id}/join", response_model=JoinResponse)
async def join_round(
    round_id: str,
    join_data: JoinRequest,
    store: SqlRoundStore = Depends(get_store)
):
    """
    加入回合（同一玩家再次加入視為加碼）

    前置條件：
    - 回合狀態必須是 OPEN
    - 新玩家加入時人數 < 15
    - 押注總權重 > 0，禮物不可重複押注

    流程：
    1. 共享儲存鎖定回合並交給狀態機驗證
    2. 寫入參與者與押注
    3. 第 2 位參與者加入時開始倒數
    4. 返回參與者與最新的回合
    """
    try:
        participant = await store.join_round(
            round_id,
            join_data.player,
            Stake(balance=join_data.balance, items=join_data.items)
        )
        round_schema = await store.fetch_round(round_id)

        logger.info(f"Player {participant.id} joined round {round_id} via API")
        return JoinResponse(participant=participant, round=round_schema)

    except RoundNotFound:
        raise HTTPException(status_code=404, detail="Round not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to join round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/rounds/{round_id}/close", response_model=CloseRoundResponse)
async def close_round(
    round_id: str,
    store: SqlRoundStore = Depends(get_store),
    machine: RoundStateMachine = Depends(get_machine)
):
    """
    倒數結束後關閉回合（鎖定 + 抽獎 + 結算）

    **並發安全**：
    - 任何客戶端都可以呼叫，只有贏得 compare-and-set 的請求會抽獎
    - 輸掉的請求返回 LOST_RACE 與對方的結算結果
    - 鎖定後超過 settle_timeout 仍未結算的回合，改為無贏家的強制結算

    返回：
        - outcome: SETTLED / FORCE_SETTLED / LOST_RACE / COUNTDOWN_CLEARED / NOT_READY
        - round: 最新的回合
    """
    try:
        current = await store.fetch_round(round_id)
        if current is None:
            raise HTTPException(status_code=404, detail="Round not found")

        coordinator = SyncCoordinator(store, machine)
        coordinator.reconcile(current)
        if current.status in (RoundStatus.LOCKED, RoundStatus.DRAWING):
            outcome = await coordinator.recover_stalled_round()
        else:
            outcome = await coordinator.close_round()

        if coordinator.degraded_mode:
            raise HTTPException(status_code=503, detail="Shared store unavailable")

        if outcome in (CloseOutcome.SETTLED, CloseOutcome.FORCE_SETTLED):
            logger.info(f"Round {round_id} closed via API: {outcome.value}")

        return CloseRoundResponse(outcome=outcome.value, round=coordinator.mirror)

    except HTTPException:
        raise
    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to close round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/rounds/{round_id}/logs", response_model=List[EventLogEntrySchema])
async def get_round_logs(round_id: str, store: SqlRoundStore = Depends(get_store)):
    """取得回合的事件紀錄（依時間排序）"""
    try:
        if await store.fetch_round(round_id) is None:
            raise HTTPException(status_code=404, detail="Round not found")
        return await store.fetch_log_entries(round_id)

    except HTTPException:
        raise
    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get round logs: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/history", response_model=List[HistoryRecordSchema])
async def get_history(
    limit: int = Query(20, ge=1, le=100),
    store: SqlRoundStore = Depends(get_store)
):
    """最近結算的回合（新的在前）"""
    try:
        return await store.fetch_history(limit)

    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
