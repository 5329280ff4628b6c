"""
WebSocket endpoint：Host 與玩家 session 的即時通道

URL: /ws/{room_id}?session_token=...&role=host|player

連線流程：
  1. Accept，送出 HELLO 與 session token（沒帶就發一個新的）
  2. 驗證房間（role=host 時還要驗證 host token）
  3. 訂閱房間 topic，把訊息轉送到 socket
  4. 回來的玩家：送 snapshot（自己的紀錄 + 回合狀態）
  5. 訊息迴圈（依 "type" 分派）
  6. 斷線：取消訂閱；Host socket 關閉代表房間關閉

Client -> server 訊息：
  join_as_player  {name}                   player
  player_choice   "Buy" | "Hold" | "Sell"  player
  start_round     {durationSeconds?}       host
  random_news     {durationSeconds?, startCountdown?}  host
  reveal          -                        host
  retry           -                        host
  ping            -                        anyone

單一訊息出錯只回 error，不會中斷連線（Host 斷線會關房間）。
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from api.dependencies import get_room_manager, get_session_factory, start_countdown
from core.exceptions import MarketGameException, TransportUnavailable, UnknownRoom
from core.room_manager import RoomSessionManager
from core.session import Role, SessionContext
from core.transport import Subscription, meta_topic, player_topic, players_topic
from models import Choice
from schemas import SocketJoin, SocketRandomNews, SocketStartRound
from services import ledger_service
from services.naming_service import generate_session_token, normalize_room_code
from services.news_service import news_countdown

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)

WS_CLOSE_TRY_AGAIN_LATER = 1013
WS_CLOSE_ROOM_NOT_FOUND = 4404
WS_CLOSE_NOT_HOST = 4403


async def send_json_safe(ws: WebSocket, payload: dict) -> None:
    try:
        await ws.send_json(payload)
    except Exception:
        logger.debug("Send to closed socket dropped")


async def send_error(ws: WebSocket, code: str, message: str = "") -> None:
    await send_json_safe(ws, {"type": "error", "payload": {"code": code, "message": message}})


class SocketSession:
    """一條連線：它的 context、訂閱與訊息轉送"""

    def __init__(self, ws: WebSocket, ctx: SessionContext, manager: RoomSessionManager, session_factory):
        self.ws = ws
        self.ctx = ctx
        self.manager = manager
        self.session_factory = session_factory
        self.player_id: Optional[str] = None
        self._sub: Optional[Subscription] = None
        self._pump: Optional[asyncio.Task] = None

    async def run_db(self, fn: Callable, *args) -> Any:
        """在 thread pool 以獨立的 session 執行 fn(db, *args)"""
        def work():
            db = self.session_factory()
            try:
                return fn(db, *args)
            finally:
                db.close()
        return await run_in_threadpool(work)

    def subscribe(self) -> None:
        """（重新）訂閱；知道玩家身分後才加上自己的 topic"""
        self.unsubscribe()
        room_id = self.ctx.room_id
        topics = [meta_topic(room_id), players_topic(room_id)]
        if self.player_id:
            topics.append(player_topic(room_id, self.player_id))
        self._sub = self.manager.transport.subscribe(*topics)
        self._pump = asyncio.create_task(self._forward(self._sub))

    def unsubscribe(self) -> None:
        if self._sub is not None:
            self._sub.cancel()
            self._sub = None
        if self._pump is not None:
            self._pump.cancel()
            self._pump = None

    async def _forward(self, sub: Subscription) -> None:
        async for message in sub:
            await send_json_safe(self.ws, message)

    async def send_snapshot(self) -> None:
        token = self.ctx.session_token if self.ctx.role is Role.PLAYER else None
        snapshot = await self.run_db(self.manager.snapshot, self.ctx.room_id, token)
        await send_json_safe(self.ws, snapshot)

    # ---------- handlers ----------

    async def join_as_player(self, payload: Any) -> None:
        body = SocketJoin.model_validate(payload or {})

        def join(db):
            player = self.manager.join_as_player(db, self.ctx.room_id, self.ctx.session_token, body.name)
            return player.id
        self.player_id = await self.run_db(join)
        self.subscribe()
        await self.send_snapshot()

    async def player_choice(self, payload: Any) -> None:
        choice = Choice(payload)
        stored = await self.run_db(self.manager.submit_choice, self.ctx, choice)
        await send_json_safe(self.ws, {"type": "choice_ack", "payload": {
            "choice": choice.value,
            "status": "ok" if stored else "ignored",
        }})

    async def start_round(self, payload: Any) -> None:
        body = SocketStartRound.model_validate(payload or {})

        def start(db):
            room = self.manager.start_round(db, self.ctx, body.durationSeconds)
            return room.id, room.countdown_active
        room_id, counting = await self.run_db(start)
        if counting:
            start_countdown(self.manager, self.session_factory, room_id)

    async def random_news(self, payload: Any) -> None:
        body = SocketRandomNews.model_validate(payload or {})
        await self.run_db(self.manager.random_news, self.ctx)

        duration = news_countdown(body.durationSeconds, body.startCountdown)
        if not duration:
            return

        # 保留已投的選擇，只對目前的回合啟動倒數
        def arm(db):
            room = self.manager.arm_countdown(db, self.ctx, duration)
            return room.id, room.countdown_active
        room_id, counting = await self.run_db(arm)
        if counting:
            start_countdown(self.manager, self.session_factory, room_id)

    async def reveal(self, payload: Any) -> None:
        await self.run_db(self.manager.reveal, self.ctx)

    async def retry(self, payload: Any) -> None:
        await self.run_db(self.manager.retry_settlement, self.ctx)

    async def ping(self, payload: Any) -> None:
        await send_json_safe(self.ws, {"type": "pong"})

    async def dispatch(self, message: Dict[str, Any]) -> None:
        mtype = message.get("type")
        player_actions = {"join_as_player": self.join_as_player, "player_choice": self.player_choice}
        host_actions = {
            "start_round": self.start_round,
            "random_news": self.random_news,
            "reveal": self.reveal,
            "retry": self.retry,
        }

        if mtype == "ping":
            handler = self.ping
        elif mtype in player_actions and self.ctx.role is Role.PLAYER:
            handler = player_actions[mtype]
        elif mtype in host_actions and self.ctx.role is Role.HOST:
            handler = host_actions[mtype]
        elif mtype in player_actions or mtype in host_actions:
            await send_error(self.ws, "not_allowed", f"{mtype} is not allowed for role {self.ctx.role.value}")
            return
        else:
            await send_error(self.ws, "unknown_message", str(mtype))
            return

        try:
            await handler(message.get("payload"))
        except MarketGameException as e:
            await send_error(self.ws, type(e).__name__, str(e))
        except ValidationError as e:
            await send_error(self.ws, "invalid_payload", str(e))
        except ValueError as e:
            await send_error(self.ws, "invalid_payload", str(e))
        except Exception as e:
            # 單一訊息失敗只回 error，迴圈繼續
            logger.error(f"Failed to handle {mtype} in room {self.ctx.room_id}: {e}", exc_info=True)
            await send_error(self.ws, "internal_error", f"{mtype} failed")


@router.websocket("/ws/{room_id}")
async def room_socket(
    ws: WebSocket,
    room_id: str,
    session_token: Optional[str] = Query(default=None),
    role: str = Query(default="player"),
    manager: RoomSessionManager = Depends(get_room_manager),
    session_factory=Depends(get_session_factory),
):
    await ws.accept()

    try:
        session_role = Role(role)
    except ValueError:
        await send_error(ws, "invalid_role", role)
        await ws.close()
        return

    token = session_token or generate_session_token()
    ctx = SessionContext(room_id=normalize_room_code(room_id), session_token=token, role=session_role)
    session = SocketSession(ws, ctx, manager, session_factory)
    await send_json_safe(ws, {"type": "HELLO", "payload": {"sessionToken": token, "role": session_role.value}})

    # 1. 驗證房間 / host 綁定，找出回來的玩家
    def bind(db):
        room = manager.get_room(db, ctx.room_id)
        if room.closed:
            return "closed", None
        if session_role is Role.HOST and room.host_token != token:
            return "not_host", None
        player = ledger_service.get_player_by_token(db, room.id, token)
        return "ok", player.id if player else None

    try:
        status, player_id = await session.run_db(bind)
    except UnknownRoom:
        await send_error(ws, "cannot_join", f"Room {ctx.room_id} not found")
        await ws.close(code=WS_CLOSE_ROOM_NOT_FOUND)
        return

    if status == "closed":
        await send_json_safe(ws, {"type": "host_left", "roomId": ctx.room_id, "payload": None})
        await ws.close()
        return
    if status == "not_host":
        await send_error(ws, "not_host", "Host token does not match this room")
        await ws.close(code=WS_CLOSE_NOT_HOST)
        return
    session.player_id = player_id

    # 2. 訂閱
    try:
        session.subscribe()
    except TransportUnavailable as e:
        logger.warning(f"Realtime unavailable for room {ctx.room_id}: {e}")
        await send_error(ws, "realtime_unavailable", str(e))
        await ws.close(code=WS_CLOSE_TRY_AGAIN_LATER)
        return

    # 3. 重新連線：只回目前狀態，不建立任何東西
    await session.send_snapshot()

    try:
        while True:
            try:
                message = json.loads(await ws.receive_text())
            except (json.JSONDecodeError, KeyError):
                # 非 JSON 的 text frame 或 binary frame
                logger.warning(f"Invalid JSON from {session_role.value} socket in room {ctx.room_id}")
                await send_error(ws, "invalid_json", "Expected a JSON text frame")
                continue
            if not isinstance(message, dict):
                await send_error(ws, "invalid_payload", "Expected a JSON object")
                continue
            await session.dispatch(message)

    except WebSocketDisconnect:
        logger.info(f"{session_role.value} socket left room {ctx.room_id}")
    finally:
        session.unsubscribe()
        if session_role is Role.HOST:
            try:
                await session.run_db(manager.leave_as_host, ctx)
            except MarketGameException as e:
                logger.info(f"Host disconnect for room {ctx.room_id}: {e}")
