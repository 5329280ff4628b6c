"""
Player 帳本：身分、資金餘額與本回合的選擇

寫入權責：
- choice：只由玩家自己的 session 寫入（record_choice），只在結算與
  回合開始時重設
- capital：只由 Host 的結算步驟寫入（settle_round）

兩個寫入者碰的是不同欄位，玩家投票與 Host 結算之間不需要額外的鎖。
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Choice, Player, Room, RoundPhase
from core.exceptions import PlayerNotFound, RoundLocked, UnknownRoom
from services.naming_service import default_player_name, generate_player_id
from services.price_engine import apply_to_player, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChoiceTally:
    buy: int
    hold: int
    sell: int
    total: int

    @property
    def buy_fraction(self) -> Decimal:
        return Decimal(self.buy) / self.total if self.total else Decimal("0")

    @property
    def sell_fraction(self) -> Decimal:
        return Decimal(self.sell) / self.total if self.total else Decimal("0")


def get_player_by_token(db: Session, room_id: str, session_token: str) -> Optional[Player]:
    return db.query(Player).filter(
        Player.room_id == room_id,
        Player.session_token == session_token
    ).first()


def upsert_player(
    db: Session,
    room_id: str,
    session_token: str,
    name: Optional[str],
    starting_capital: Decimal,
) -> Player:
    """
    建立 (room, session token) 的玩家，或回傳既有的玩家

    冪等：同一個 token 永遠對應同一個 Player。重新整理頁面與自己的
    第一次加入競爭時，由 (room_id, session_token) 的 unique constraint 吸收。

    參數：
        db: SQLAlchemy Session
        room_id: 房間代碼
        session_token: 玩家裝置快取的 token
        name: 顯示名稱；空白則保留目前名稱（或預設名稱）
        starting_capital: 新玩家的起始資金

    返回：
        Player

    注意：
        - 必須是 transaction 的第一個寫入：insert 競爭失敗時
          整個 transaction 會先 rollback 再重新讀取
    """
    name = (name or "").strip()

    existing = get_player_by_token(db, room_id, session_token)
    if existing:
        if name and existing.name != name:
            logger.info(f"Player {existing.id} renamed {existing.name!r} -> {name!r}")
            existing.name = name
            db.flush()
        return existing

    player_id = generate_player_id()
    player = Player(
        id=player_id,
        room_id=room_id,
        session_token=session_token,
        name=name or default_player_name(player_id),
        capital=to_decimal(starting_capital),
        choice=None,
    )
    db.add(player)
    try:
        db.flush()
    except IntegrityError:
        # 同一個 token 的另一個 request 先完成 insert
        db.rollback()
        existing = get_player_by_token(db, room_id, session_token)
        if existing is None:
            raise
        logger.warning(f"Duplicate join for token in room {room_id}, reusing player {existing.id}")
        return existing

    logger.info(f"Player {player.id} ({player.name}) joined room {room_id}")
    return player


def record_choice(db: Session, room_id: str, player_id: str, choice: Choice) -> Player:
    """
    儲存玩家這一回合的選擇

    玩家可以改變主意：鎖定前的最後一次選擇為準。

    異常：
        UnknownRoom: 房間不存在
        RoundLocked: 回合不是 Open
        PlayerNotFound: 玩家不在這個房間
    """
    room = db.query(Room).filter(Room.id == room_id).first()
    if not room:
        raise UnknownRoom(room_id)
    if room.phase != RoundPhase.OPEN:
        raise RoundLocked(room_id, room.phase)

    player = db.query(Player).filter(
        Player.room_id == room_id,
        Player.id == player_id
    ).first()
    if not player:
        raise PlayerNotFound(player_id)

    player.choice = choice
    player.last_vote_at = datetime.now(timezone.utc)
    db.flush()
    return player


def tally_choices(db: Session, room_id: str) -> ChoiceTally:
    """
    統計這一回合的選擇

    沒有選擇的玩家仍算在總數內，棄權者會稀釋多數門檻，
    但本身不影響價格。
    """
    players = db.query(Player).filter(Player.room_id == room_id).all()
    return ChoiceTally(
        buy=sum(1 for p in players if p.choice == Choice.BUY),
        hold=sum(1 for p in players if p.choice == Choice.HOLD),
        sell=sum(1 for p in players if p.choice == Choice.SELL),
        total=len(players),
    )


def settle_round(db: Session, room_id: str, delta: Decimal) -> int:
    """
    把回合的總變動套用到每位玩家，並清除選擇

    這裡不保證冪等：回合狀態機只在贏得這一回合的結算認領之後
    才會呼叫。

    返回：
        寫入的玩家筆數
    """
    players = db.query(Player).filter(Player.room_id == room_id).all()
    for player in players:
        player.capital = apply_to_player(player.capital, player.choice, delta)
        player.choice = None
    db.flush()
    return len(players)


def reset_choices(db: Session, room_id: str) -> None:
    db.flush()
    db.query(Player).filter(Player.room_id == room_id).update(
        {Player.choice: None}, synchronize_session=False
    )
    db.expire_all()


def roster(db: Session, room_id: str) -> Dict[str, Player]:
    """以 player id 為 key 的完整名單，依加入順序"""
    players = db.query(Player).filter(
        Player.room_id == room_id
    ).order_by(Player.joined_at, Player.id).all()
    return {p.id: p for p in players}


def remove_all_players(db: Session, room_id: str) -> int:
    db.flush()
    count = db.query(Player).filter(Player.room_id == room_id).delete(synchronize_session=False)
    db.expire_all()
    return count
