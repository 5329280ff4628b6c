"""
Session context 與 client 端的狀態對齊

SessionContext 是明確傳入每個房間操作的 (room, session token, role)；
伺服器上沒有任何隱含的「目前房間」或「我是不是 Host」狀態。

SessionMirror 是連線中的 session 在本地保存的東西：看過的最新回合狀態
與玩家紀錄。訊息都是帶著房間 state_version 的快照，重複或遲到
（版本較舊）的訊息直接忽略。
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.exceptions import NotHost, RoomClosed

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    HOST = "host"
    PLAYER = "player"


@dataclass(frozen=True)
class SessionContext:
    room_id: str
    session_token: str
    role: Role

    @property
    def is_host(self) -> bool:
        return self.role is Role.HOST

    def require_host(self) -> None:
        if self.role is not Role.HOST:
            raise NotHost(f"Session is not the host of room {self.room_id}")

    def require_player(self) -> None:
        if self.role is not Role.PLAYER:
            raise NotHost(f"Only player sessions can vote in room {self.room_id}")


# 訊息類型 -> 它更新的 mirror 區塊
_SLICES = {
    "snapshot": "round",
    "round_started": "round",
    "round_locked": "round",
    "countdown": "round",
    "news_staged": "round",
    "news_update": "news",
    "update_players": "players",
    "player_update": "player",
}


class SessionMirror:
    """
    一個 session 的本地視圖，由 transport 訊息餵入

    規則：
    - 比同區塊上一則已套用訊息還舊的訊息會被丟掉
    - 相同版本會再套用一次（快照是冪等的）
    - host_left 之後不再套用任何訊息，ensure_open() 會拋出異常
    """

    def __init__(self, ctx: SessionContext, player_id: Optional[str] = None):
        self.ctx = ctx
        self.player_id = player_id
        self.closed = False
        self.round: Dict[str, Any] = {}
        self.player: Optional[Dict[str, Any]] = None
        self.players: Dict[str, Dict[str, Any]] = {}
        self.last_news: Optional[Dict[str, Any]] = None
        self._versions: Dict[str, int] = {}

    @property
    def version(self) -> int:
        return max(self._versions.values(), default=0)

    def apply(self, message: Dict[str, Any]) -> bool:
        """套用一則訊息；被忽略時回傳 False"""
        if self.closed:
            return False

        mtype = message.get("type")
        payload = message.get("payload")
        version = message.get("version", 0)

        if message.get("roomId") not in (None, self.ctx.room_id):
            return False

        if mtype == "host_left":
            self.closed = True
            return True

        slice_name = _SLICES.get(mtype)
        if slice_name is None:
            logger.debug(f"Ignoring unknown message type {mtype}")
            return False

        if version < self._versions.get(slice_name, 0):
            logger.debug(f"Dropping stale {mtype} v{version} (have v{self._versions[slice_name]})")
            return False
        self._versions[slice_name] = version

        if mtype == "snapshot":
            self.round = dict(payload["round"])
            if payload.get("player"):
                self.player = dict(payload["player"])
                self.player_id = self.player["id"]
                self._versions["player"] = max(self._versions.get("player", 0), version)
        elif mtype == "round_started":
            self.round.update(
                roundNumber=payload["roundNumber"],
                phase="Open",
                countdownRemaining=payload["durationSeconds"],
            )
        elif mtype == "round_locked":
            self.round["phase"] = "Locked"
        elif mtype == "countdown":
            self.round["countdownRemaining"] = payload["remaining"]
        elif mtype == "news_staged":
            self.round["newsText"] = payload["text"]
        elif mtype == "news_update":
            self.last_news = dict(payload)
            self.round["price"] = payload["price"]
            self.round["newsText"] = ""
        elif mtype == "update_players":
            self.players = {pid: dict(p) for pid, p in payload.items()}
        elif mtype == "player_update":
            if self.player_id is None or payload["id"] == self.player_id:
                self.player = dict(payload)
                self.player_id = payload["id"]
        return True

    def ensure_open(self) -> None:
        if self.closed:
            raise RoomClosed(self.ctx.room_id)

    def can_vote(self) -> bool:
        return not self.closed and self.round.get("phase") == "Open"
