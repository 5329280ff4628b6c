"""
Room Manager：管理房間生命週期、角色與玩家 session

職責：
1. 建立房間並綁定 Host session
2. 玩家加入 / 重新加入（同一個 session token -> 同一個身分）
3. 依呼叫者的角色（SessionContext）把關每個動作
4. Host 的動作交給回合狀態機
5. 每個已 commit 的變更都經由 transport 發佈

原則：
- 每次寫入是獨立的 transaction；發佈一律在 commit 之後
- 關閉的房間不接受任何人的寫入
"""
from typing import List, Optional, Tuple
import logging
import random

from sqlalchemy.orm import Session

from models import Choice, Player, PricePoint, Room, RoundPhase
from core.broadcaster import Broadcaster, round_payload
from core.countdown import CountdownRegistry
from core.exceptions import (
    NotHost,
    PlayerNotFound,
    RoomClosed,
    RoundLocked,
    UnknownRoom,
)
from core.locks import with_room_lock
from core.round_state_machine import RoundStateMachine, SettlementResult, TickResult
from core.session import Role, SessionContext
from core.transport import SyncTransport
from database import get_settings, transactional
from services import ledger_service
from services.naming_service import (
    generate_room_code,
    generate_session_token,
    normalize_room_code,
)
from services.news_service import News, draw_news
from services.price_engine import to_decimal
from services.state_service import bump_state_version, log_event

logger = logging.getLogger(__name__)


def _get_room(db: Session, room_id: str) -> Room:
    room = db.query(Room).filter(Room.id == normalize_room_code(room_id)).first()
    if not room:
        raise UnknownRoom(room_id)
    return room


def _get_open_room(db: Session, room_id: str) -> Room:
    room = _get_room(db, room_id)
    if room.closed:
        raise RoomClosed(room.id)
    return room


def _require_host(db: Session, ctx: SessionContext) -> Room:
    """權限檢查：角色是 HOST，且 token 是這個房間的 host token"""
    ctx.require_host()
    room = _get_open_room(db, ctx.room_id)
    if room.host_token != ctx.session_token:
        raise NotHost(f"Session is not the host of room {room.id}")
    return room


# ============ 交易單位 ============

@transactional
def _create_room(db: Session, host_token: str) -> Room:
    # 1. 唯一的房間代碼
    code = generate_room_code()
    while db.query(Room).filter(Room.id == code).first():
        code = generate_room_code()
        logger.warning(f"Room code collision detected, regenerating: {code}")

    # 2. 建立 Room 與起始價格點（第 0 回合）
    initial_price = to_decimal(get_settings().initial_price)
    room = Room(
        id=code,
        host_token=host_token,
        closed=False,
        round_number=1,
        phase=RoundPhase.IDLE,
        countdown_remaining=0,
        countdown_active=False,
        news_text="",
        news_impact=0,
        price=initial_price,
        state_version=0,
    )
    db.add(room)
    db.flush()
    db.add(PricePoint(room_id=code, round_number=0, price=initial_price))

    # 3. 記錄事件
    log_event(db, code, "ROOM_CREATED", code=code)
    return room


@transactional
def _join(db: Session, room_id: str, session_token: str, name: Optional[str]) -> Player:
    room = _get_open_room(db, room_id)
    player = ledger_service.upsert_player(
        db, room.id, session_token, name, to_decimal(get_settings().starting_capital)
    )
    bump_state_version(db, room.id, reason="player_joined")
    return player


@transactional
def _record_choice(db: Session, room_id: str, session_token: str, choice: Choice) -> Optional[Player]:
    room = _get_open_room(db, room_id)
    player = ledger_service.get_player_by_token(db, room.id, session_token)
    if not player:
        raise PlayerNotFound(session_token)
    try:
        player = ledger_service.record_choice(db, room.id, player.id, choice)
    except RoundLocked as e:
        logger.warning(f"Dropped choice from player {player.id}: {e}")
        return None
    bump_state_version(db, room.id, reason="choice")
    return player


@transactional
def _close_room(db: Session, room_id: str) -> Room:
    room = with_room_lock(room_id, db).first()
    if room.phase != RoundPhase.IDLE:
        room = RoundStateMachine.transition(db, room_id, RoundPhase.IDLE)
    room.closed = True
    room.countdown_active = False
    room.countdown_remaining = 0
    bump_state_version(db, room_id, reason="host_left")
    log_event(db, room_id, "ROOM_CLOSED")
    return room


@transactional
def _reset_game(db: Session, room_id: str) -> Room:
    room = with_room_lock(room_id, db).first()
    if room.phase == RoundPhase.LOCKED:
        raise RoundLocked(room_id, room.phase)

    removed = ledger_service.remove_all_players(db, room_id)
    db.query(PricePoint).filter(PricePoint.room_id == room_id).delete(synchronize_session=False)
    db.flush()

    initial_price = to_decimal(get_settings().initial_price)
    db.add(PricePoint(room_id=room_id, round_number=0, price=initial_price))

    room = db.query(Room).filter(Room.id == room_id).first()
    room.price = initial_price
    room.round_number = 1
    room.phase = RoundPhase.IDLE
    room.countdown_active = False
    room.countdown_remaining = 0
    room.news_text = ""
    room.news_impact = 0

    bump_state_version(db, room_id, reason="reset")
    log_event(db, room_id, "GAME_RESET", players_removed=removed)
    return room


# ============ Manager ============

class RoomSessionManager:
    """
    所有房間操作的入口

    每個呼叫都帶著呼叫者的 SessionContext（唯讀操作或房間自己擁有的
    操作，例如倒數 tick，則只帶 room id）。
    """

    def __init__(self, transport: SyncTransport, countdowns: Optional[CountdownRegistry] = None):
        self.transport = transport
        self.broadcaster = Broadcaster(transport)
        self.countdowns = countdowns

    # ---------- rooms ----------

    def create_room(self, db: Session, host_token: Optional[str] = None) -> Tuple[Room, SessionContext]:
        """
        建立房間，並把呼叫的 session 綁定為 Host

        返回：
            (Room, host SessionContext)
        """
        host_token = host_token or generate_session_token()
        room = _create_room(db, host_token)
        logger.info(f"Created room {room.id}")
        return room, SessionContext(room_id=room.id, session_token=host_token, role=Role.HOST)

    def get_room(self, db: Session, room_id: str) -> Room:
        return _get_room(db, room_id)

    def price_history(self, db: Session, room_id: str) -> List[PricePoint]:
        room = _get_room(db, room_id)
        return list(room.price_history)

    def roster(self, db: Session, room_id: str) -> List[Player]:
        room = _get_room(db, room_id)
        return list(ledger_service.roster(db, room.id).values())

    def leave_as_host(self, db: Session, ctx: SessionContext) -> Room:
        """
        Host 離開：房間變成唯讀，並通知所有 session

        之後對這個房間的任何寫入都會拋出 RoomClosed。
        """
        room = _require_host(db, ctx)
        room = _close_room(db, room.id)
        self._cancel_countdown(room.id)
        self.broadcaster.host_left(room.id, room.state_version)
        logger.info(f"Host left room {room.id}, room closed")
        return room

    # ---------- players ----------

    def join_as_player(self, db: Session, room_id: str, session_token: str, display_name: Optional[str]) -> Player:
        """
        以玩家身分加入（或重新加入）房間

        每次載入頁面都可以安全呼叫：同一個 session token 永遠拿回
        同一個 Player，資金也一起保留。

        異常：
            UnknownRoom: 房間不存在（"cannot join"）
            RoomClosed: Host 已離開
        """
        player = _join(db, room_id, session_token, display_name)
        room = _get_room(db, player.room_id)
        self.broadcaster.roster(room.id, room.state_version, ledger_service.roster(db, room.id).values())
        self.broadcaster.player_update(room.id, room.state_version, player)
        return player

    def player_context(self, db: Session, room_id: str, session_token: str) -> SessionContext:
        room = _get_room(db, room_id)
        return SessionContext(room_id=room.id, session_token=session_token, role=Role.PLAYER)

    def resume_session(self, db: Session, room_id: str, session_token: str) -> Tuple[Player, Room]:
        """
        重新連線：回傳既有的玩家與目前的回合狀態

        絕不建立新玩家。

        異常：
            UnknownRoom / RoomClosed
            PlayerNotFound: 這個 token 從未加入過房間
        """
        room = _get_open_room(db, room_id)
        player = ledger_service.get_player_by_token(db, room.id, session_token)
        if not player:
            raise PlayerNotFound(session_token)
        return player, room

    def snapshot(self, db: Session, room_id: str, session_token: Optional[str] = None) -> dict:
        room = _get_room(db, room_id)
        player = None
        if session_token:
            player = ledger_service.get_player_by_token(db, room.id, session_token)
        return self.broadcaster.snapshot(room, player)

    def submit_choice(self, db: Session, ctx: SessionContext, choice: Choice) -> bool:
        """
        記錄玩家這一回合的選擇

        返回：
            True 表示已儲存；False 表示回合已鎖定（選擇被丟棄，不算錯誤）

        異常：
            RoomClosed: Host 已離開
            PlayerNotFound: session 從未加入
        """
        ctx.require_player()
        player = _record_choice(db, ctx.room_id, ctx.session_token, choice)
        if player is None:
            return False
        room = _get_room(db, player.room_id)
        self.broadcaster.player_update(room.id, room.state_version, player)
        self.broadcaster.roster(room.id, room.state_version, ledger_service.roster(db, room.id).values())
        return True

    def add_local_player(self, db: Session, ctx: SessionContext, name: Optional[str]) -> Player:
        """Host 新增沒有裝置的玩家（離線測試用）"""
        room = _require_host(db, ctx)
        return self.join_as_player(db, room.id, generate_session_token(), name)

    # ---------- rounds (host) ----------

    def start_round(self, db: Session, ctx: SessionContext, duration: Optional[int] = None) -> Room:
        room = _require_host(db, ctx)
        room = RoundStateMachine.start_round(db, room.id, duration)
        self.broadcaster.round_started(room)
        self.broadcaster.roster(room.id, room.state_version, ledger_service.roster(db, room.id).values())
        logger.info(f"Room {room.id}: round {room.round_number} started (countdown={room.countdown_remaining}s)")
        return room

    def arm_countdown(self, db: Session, ctx: SessionContext, seconds: int) -> Room:
        """
        對目前的回合啟動倒數，已投的選擇保留

        新聞發佈後的「N 秒反應時間」走這裡，不走 start_round。
        回合原本就 OPEN 時只發佈 countdown；從 IDLE 開啟時發佈 round_started。
        """
        room = _require_host(db, ctx)
        was_open = room.phase == RoundPhase.OPEN
        room = RoundStateMachine.arm_countdown(db, room.id, seconds)
        if was_open:
            self.broadcaster.countdown(room.id, room.state_version, room.countdown_remaining)
        else:
            self.broadcaster.round_started(room)
        logger.info(f"Room {room.id}: countdown armed for round {room.round_number} ({room.countdown_remaining}s)")
        return room

    def random_news(self, db: Session, ctx: SessionContext, rng: Optional[random.Random] = None) -> News:
        """從新聞池抽一則頭條，放入下一次 reveal"""
        room = _require_host(db, ctx)
        news = draw_news(rng)
        room = RoundStateMachine.stage_news(db, room.id, news.text, news.impact)
        self.broadcaster.news_staged(room)
        logger.info(f"Room {room.id}: news staged ({news.impact:+})")
        return news

    def reveal(self, db: Session, ctx: SessionContext) -> Optional[SettlementResult]:
        """
        立即結算 Host 看到的那一回合

        沒有可結算的東西時回傳 None（回合沒開、或倒數已經先結算了；
        這時下一回合已自動開啟，也不會被這次 reveal 鎖到）。
        """
        room = _require_host(db, ctx)
        self._cancel_countdown(room.id)
        result = RoundStateMachine.reveal(
            db, room.id,
            round_number=room.round_number,
            on_locked=lambda: self._publish_locked(db, room.id),
        )
        if result:
            self._publish_settlement(db, result)
        return result

    def retry_settlement(self, db: Session, ctx: SessionContext) -> Optional[SettlementResult]:
        """重跑因寫入失敗而停在 LOCKED 的結算"""
        room = _require_host(db, ctx)
        result = RoundStateMachine.settle(db, room.id)
        if result:
            self._publish_settlement(db, result)
        return result

    def reset_game(self, db: Session, ctx: SessionContext) -> Room:
        """回到第 1 回合、初始價格、沒有玩家"""
        room = _require_host(db, ctx)
        self._cancel_countdown(room.id)
        room = _reset_game(db, room.id)
        self.broadcaster.roster(room.id, room.state_version, [])
        self.broadcaster.room_event(room.id, room.state_version, "snapshot", {
            "round": round_payload(room),
            "player": None,
        })
        return room

    def tick(self, db: Session, room_id: str) -> TickResult:
        """
        房間倒數一秒（由倒數驅動呼叫）

        countdown 在 reveal 之前發佈，版本號小於之後的結算訊息。
        """
        def publish_step(step: TickResult) -> None:
            if step.counting or step.expired:
                self.broadcaster.countdown(room_id, step.state_version, step.remaining)

        result = RoundStateMachine.tick(
            db, room_id,
            on_locked=lambda: self._publish_locked(db, room_id),
            on_step=publish_step,
        )
        if result.settlement:
            self._publish_settlement(db, result.settlement)
        return result

    # ---------- publishing ----------

    def _cancel_countdown(self, room_id: str) -> None:
        if self.countdowns is not None:
            self.countdowns.cancel(room_id)

    def _publish_locked(self, db: Session, room_id: str) -> None:
        room = _get_room(db, room_id)
        self.broadcaster.round_locked(room)

    def _publish_settlement(self, db: Session, result: SettlementResult) -> None:
        """
        結算的發佈順序固定為：
        news_update -> update_players -> player_update（每人一則）-> round_started

        下一回合最後才公布，所以沒有 session 會在看到自己的第 N 回合
        結算之前看到第 N+1 回合。
        """
        room = _get_room(db, result.room_id)
        version = result.state_version
        players = list(ledger_service.roster(db, room.id).values())

        self.broadcaster.news_update(room.id, version, result)
        self.broadcaster.roster(room.id, version, players)
        for player in players:
            self.broadcaster.player_update(room.id, version, player)
        if result.next_phase == RoundPhase.OPEN:
            self.broadcaster.room_event(room.id, version, "round_started", {
                "roundNumber": result.next_round_number,
                "durationSeconds": 0,
            })
