"""
Player API Endpoints

職責：
1. 加入房間（同一個 session token 冪等）
2. 重新連線（回復既有身分）
3. 送出 Buy / Hold / Sell 選擇
4. 玩家名單
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from api.dependencies import get_room_manager
from api.rooms import host_context
from core.exceptions import NotHost, PlayerNotFound, RoomClosed, UnknownRoom
from core.room_manager import RoomSessionManager
from core.session import Role, SessionContext
from database import get_db
from schemas import (
    ActionResponse,
    ChoiceSubmit,
    LocalPlayerCreate,
    LocalPlayerResponse,
    PlayerJoin,
    PlayerResponse,
    ResumeResponse,
    RoundStateResponse,
)

router = APIRouter(prefix="/api/rooms", tags=["players"])
logger = logging.getLogger(__name__)


@router.post("/{room_id}/join", response_model=PlayerResponse)
def join_room(room_id: str, player_data: PlayerJoin, db: Session = Depends(get_db),
              manager: RoomSessionManager = Depends(get_room_manager)):
    """
    加入房間（player endpoint）

    前置條件：
    - 房間存在且 Host 尚未離開

    以同一個 session_token 再呼叫（重新整理頁面）會拿回同一個玩家，
    資金不變；帶新的非空名字會改名。
    """
    try:
        player = manager.join_as_player(db, room_id, player_data.session_token, player_data.name)
        return PlayerResponse.from_player(player)

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Cannot join: room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Cannot join: room is closed")
    except Exception as e:
        logger.error(f"Failed to join room: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_id}/me", response_model=ResumeResponse)
def resume_session(
    room_id: str,
    session_token: str = Query(...),
    db: Session = Depends(get_db),
    manager: RoomSessionManager = Depends(get_room_manager),
):
    """重新連線：玩家目前的紀錄與回合狀態"""
    try:
        player, room = manager.resume_session(db, room_id, session_token)
        return ResumeResponse(
            player=PlayerResponse.from_player(player),
            round=RoundStateResponse.from_room(room),
        )

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except PlayerNotFound:
        raise HTTPException(status_code=404, detail="Not joined yet")
    except Exception as e:
        logger.error(f"Failed to resume session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{room_id}/players", response_model=List[PlayerResponse])
def get_roster(
    room_id: str,
    host_token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    manager: RoomSessionManager = Depends(get_room_manager),
):
    """
    玩家名單

    只有 Host（有效的 host_token）看得到選擇；其他人只看得到
    玩家是否已選，看不到選了什麼。
    """
    try:
        room = manager.get_room(db, room_id)
        show_choices = host_token is not None and host_token == room.host_token
        return [PlayerResponse.from_player(p, include_choice=show_choices)
                for p in manager.roster(db, room.id)]

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except Exception as e:
        logger.error(f"Failed to get roster: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/choice", response_model=ActionResponse)
def submit_choice(room_id: str, choice_data: ChoiceSubmit, db: Session = Depends(get_db),
                  manager: RoomSessionManager = Depends(get_room_manager)):
    """
    送出本回合的選擇（player endpoint）

    回合鎖定時送出的選擇會被丟棄，不算錯誤：
    回傳 status "ignored"。
    """
    try:
        ctx = SessionContext(room_id=room_id.upper(), session_token=choice_data.session_token, role=Role.PLAYER)
        stored = manager.submit_choice(db, ctx, choice_data.choice)
        return ActionResponse(status="ok" if stored else "ignored")

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except PlayerNotFound:
        raise HTTPException(status_code=404, detail="Not joined yet")
    except Exception as e:
        logger.error(f"Failed to submit choice: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{room_id}/local-players", response_model=LocalPlayerResponse)
def add_local_player(room_id: str, body: LocalPlayerCreate, db: Session = Depends(get_db),
                     manager: RoomSessionManager = Depends(get_room_manager)):
    """
    新增沒有裝置的玩家（host endpoint，離線測試用）

    回傳產生的 session_token，讓 Host 可以代替它投票。
    """
    try:
        player = manager.add_local_player(db, host_context(room_id, body.host_token), body.name)
        return LocalPlayerResponse(
            **PlayerResponse.from_player(player).model_dump(),
            session_token=player.session_token,
        )

    except UnknownRoom:
        raise HTTPException(status_code=404, detail="Room not found")
    except RoomClosed:
        raise HTTPException(status_code=410, detail="Room is closed")
    except NotHost as e:
        raise HTTPException(status_code=403, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to add local player: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
