"""
Round API Endpoints（Host 動作）

重點：
1. start_round / random_news 可以啟動每秒倒數，歸零時自動 reveal
2. reveal 是冪等的：與倒數競爭的 reveal 回傳 "ignored"
3. retry 重跑寫入失敗的結算（回合仍是 Locked）
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import logging

from api.dependencies import get_room_manager, get_session_factory, start_countdown
from api.rooms import host_context
from core.exceptions import (
    InvalidStateTransition,
    NotHost,
    RoomClosed,
    SettlementFailed,
    UnknownRoom,
)
from core.room_manager import RoomSessionManager
from database import get_db
from services.news_service import news_countdown
from schemas import (
    HostAction,
    NewsResponse,
    RandomNews,
    RevealResponse,
    RoundStateResponse,
    StartRound,
)

router = APIRouter(prefix="/api/rooms", tags=["rounds"])
logger = logging.getLogger(__name__)


@router.post("/{room_id}/rounds/start", response_model=RoundStateResponse)
async def start_round(
    room_id: str,
    body: StartRound,
    db: Session = Depends(get_db),
    manager: RoomSessionManager = Depends(get_room_manager),
    session_factory=Depends(get_session_factory),
):
    """
    開啟回合（host endpoint）

    效果：
    - phase Idle|Open -> Open，清除所有玩家的選擇
    - 帶 duration_seconds 時啟動倒數，歸零自動 reveal
    """
    try:
        ctx = host_context(room_id, body.host_token)
        room = await run_in_threadpool(manager.start_round, db, ctx, body.duration_seconds)
        if room.countdown_active:
            start_countdown(manager, session_factory, room.id)
        return RoundStateResponse.from_room(room)

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except NotHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidStateTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to start round: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/news/random", response_model=NewsResponse)
async def random_news(
    room_id: str,
    body: RandomNews,
    db: Session = Depends(get_db),
    manager: RoomSessionManager = Depends(get_room_manager),
    session_factory=Depends(get_session_factory),
):
    """
    抽一則頭條，放入下一次 reveal（host endpoint）

    帶 duration_seconds（或 start_countdown，使用設定的新聞倒數秒數）時，
    對目前的回合啟動倒數，已投下的選擇保留：先發新聞，再給 N 秒反應。
    """
    try:
        ctx = host_context(room_id, body.host_token)
        news = await run_in_threadpool(manager.random_news, db, ctx)
        room = await run_in_threadpool(manager.get_room, db, room_id)
        duration = news_countdown(body.duration_seconds, body.start_countdown)
        if duration:
            room = await run_in_threadpool(manager.arm_countdown, db, ctx, duration)
            start_countdown(manager, session_factory, room.id)
        return NewsResponse(text=news.text, round=RoundStateResponse.from_room(room))

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except NotHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidStateTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to stage news: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/reveal", response_model=RevealResponse)
def reveal(room_id: str, body: HostAction, db: Session = Depends(get_db),
           manager: RoomSessionManager = Depends(get_room_manager)):
    """
    立即結算（host endpoint）

    返回：
        - status "settled" 與結算結果
        - status "ignored"：回合沒有開啟（倒數已經先結算，
          或沒有進行中的回合）
    """
    try:
        result = manager.reveal(db, host_context(room_id, body.host_token))
        return RevealResponse.from_result(result)

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except NotHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    except SettlementFailed as e:
        logger.error(f"Settlement failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Settlement failed, round stays locked; retry")
    except Exception as e:
        logger.error(f"Failed to reveal round: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/rounds/retry", response_model=RevealResponse)
def retry_settlement(room_id: str, body: HostAction, db: Session = Depends(get_db),
                     manager: RoomSessionManager = Depends(get_room_manager)):
    """重試停在 Locked 的結算（host endpoint）"""
    try:
        result = manager.retry_settlement(db, host_context(room_id, body.host_token))
        return RevealResponse.from_result(result)

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except NotHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    except SettlementFailed as e:
        logger.error(f"Settlement retry failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Settlement failed, round stays locked; retry")
    except Exception as e:
        logger.error(f"Failed to retry settlement: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
