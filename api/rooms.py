"""
Room API Endpoints

職責：
1. 建立房間（呼叫者成為 Host）
2. 讀取房間的回合狀態與價格歷史
3. Host 離開（關閉房間）/ 完全重置
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
import logging

from api.dependencies import get_room_manager
from core.exceptions import NotHost, RoomClosed, RoundLocked, UnknownRoom
from core.room_manager import RoomSessionManager
from core.session import Role, SessionContext
from database import get_db
from schemas import (
    ActionResponse,
    HostAction,
    PricePointResponse,
    RoomCreate,
    RoomCreateResponse,
    RoomStateResponse,
    RoundStateResponse,
)
from services.naming_service import build_join_url

router = APIRouter(prefix="/api/rooms", tags=["rooms"])
logger = logging.getLogger(__name__)


def host_context(room_id: str, host_token: str) -> SessionContext:
    return SessionContext(room_id=room_id.upper(), session_token=host_token, role=Role.HOST)


@router.post("", response_model=RoomCreateResponse)
def create_room(
    request: Request,
    body: Optional[RoomCreate] = None,
    db: Session = Depends(get_db),
    manager: RoomSessionManager = Depends(get_room_manager),
):
    """
    建立房間（host endpoint）

    返回：
        - room_id: 6 碼房間代碼
        - host_token: 請保存，所有 Host 動作都需要
        - join_url: 玩家開啟即可加入的連結
    """
    try:
        room, ctx = manager.create_room(db, body.host_token if body else None)
        return RoomCreateResponse(
            room_id=room.id,
            host_token=ctx.session_token,
            join_url=build_join_url(str(request.base_url), room.id),
        )
    except Exception as e:
        logger.error(f"Failed to create room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_id}", response_model=RoomStateResponse)
def get_room(room_id: str, db: Session = Depends(get_db),
             manager: RoomSessionManager = Depends(get_room_manager)):
    """目前的回合狀態與完整的價格歷史"""
    try:
        room = manager.get_room(db, room_id)
        history = manager.price_history(db, room.id)
        return RoomStateResponse(
            room_id=room.id,
            round=RoundStateResponse.from_room(room),
            history=[PricePointResponse(round_number=p.round_number, price=float(p.price)) for p in history],
        )
    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except Exception as e:
        logger.error(f"Failed to get room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_id}/history", response_model=List[PricePointResponse])
def get_price_history(room_id: str, db: Session = Depends(get_db),
                      manager: RoomSessionManager = Depends(get_room_manager)):
    try:
        history = manager.price_history(db, room_id)
        return [PricePointResponse(round_number=p.round_number, price=float(p.price)) for p in history]
    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except Exception as e:
        logger.error(f"Failed to get price history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.delete("/{room_id}", response_model=ActionResponse)
def leave_as_host(
    room_id: str,
    host_token: str = Query(...),
    db: Session = Depends(get_db),
    manager: RoomSessionManager = Depends(get_room_manager),
):
    """
    Host 離開房間（host endpoint）

    效果：
    - 所有訂閱中的 session 收到 host_left
    - 之後對房間的任何寫入都會被拒絕
    """
    try:
        manager.leave_as_host(db, host_context(room_id, host_token))
        return ActionResponse(status="closed")

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except NotHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to close room: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/reset", response_model=RoundStateResponse)
def reset_game(
    room_id: str,
    body: HostAction,
    db: Session = Depends(get_db),
    manager: RoomSessionManager = Depends(get_room_manager),
):
    """
    完全重置（host endpoint）

    價格回到初始價格、第 1 回合、歷史重新起算，
    移除所有玩家。
    """
    try:
        room = manager.reset_game(db, host_context(room_id, body.host_token))
        return RoundStateResponse.from_room(room)

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except NotHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    except RoundLocked as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to reset game: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
