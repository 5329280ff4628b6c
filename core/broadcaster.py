"""
Broadcaster：把已 commit 的房間狀態轉成 transport 訊息

每則訊息的外層：
    {"type": ..., "roomId": ..., "version": <room state_version>, "payload": ...}

只在對應的 transaction commit 之後呼叫，session 永遠不會看到
資料庫還可能 rollback 的狀態。
"""
import logging
from typing import Any, Dict, Iterable, Optional

from models import Player, Room
from core.transport import SyncTransport, meta_topic, player_topic, players_topic

logger = logging.getLogger(__name__)


def player_payload(player: Player, include_choice: bool = True) -> Dict[str, Any]:
    """
    送到線上的玩家紀錄

    公開名單不顯示選了什麼（同時出手）；只有玩家自己的紀錄
    帶著自己的選擇。
    """
    payload = {
        "id": player.id,
        "name": player.name,
        "capital": float(player.capital),
        "hasChosen": player.choice is not None,
    }
    if include_choice:
        payload["choice"] = player.choice.value if player.choice else None
    return payload


def round_payload(room: Room) -> Dict[str, Any]:
    return {
        "roundNumber": room.round_number,
        "phase": room.phase.value,
        "countdownRemaining": room.countdown_remaining,
        "countdownActive": room.countdown_active,
        "newsText": room.news_text,
        "price": float(room.price),
        "closed": room.closed,
    }


def envelope(mtype: str, room_id: str, version: int, payload: Any = None) -> Dict[str, Any]:
    return {"type": mtype, "roomId": room_id, "version": version, "payload": payload}


class Broadcaster:
    def __init__(self, transport: SyncTransport):
        self.transport = transport

    def _send(self, topic: str, message: Dict[str, Any]) -> None:
        try:
            self.transport.publish(topic, message)
        except Exception as e:
            # 狀態已 commit；session 會從下一個 snapshot 重新同步
            logger.warning(f"Failed to publish {message['type']} to {topic}: {e}", exc_info=True)

    def room_event(self, room_id: str, version: int, mtype: str, payload: Any = None) -> None:
        self._send(meta_topic(room_id), envelope(mtype, room_id, version, payload))

    def round_started(self, room: Room) -> None:
        self.room_event(room.id, room.state_version, "round_started", {
            "roundNumber": room.round_number,
            "durationSeconds": room.countdown_remaining,
        })

    def round_locked(self, room: Room) -> None:
        self.room_event(room.id, room.state_version, "round_locked", {
            "roundNumber": room.round_number,
        })

    def countdown(self, room_id: str, version: int, remaining: int) -> None:
        self.room_event(room_id, version, "countdown", {"remaining": remaining})

    def news_staged(self, room: Room) -> None:
        # 影響幅度在 reveal 之前保密
        self.room_event(room.id, room.state_version, "news_staged", {"text": room.news_text})

    def news_update(self, room_id: str, version: int, result) -> None:
        self.room_event(room_id, version, "news_update", {
            "text": result.news_text,
            "price": float(result.price),
            "change": float(result.change),
            "percentChange": float(result.percent_change),
            "roundNumber": result.round_number,
        })

    def roster(self, room_id: str, version: int, players: Iterable[Player]) -> None:
        snapshot = {p.id: player_payload(p, include_choice=False) for p in players}
        self._send(players_topic(room_id), envelope("update_players", room_id, version, snapshot))

    def player_update(self, room_id: str, version: int, player: Player) -> None:
        self._send(
            player_topic(room_id, player.id),
            envelope("player_update", room_id, version, player_payload(player)),
        )

    def snapshot(self, room: Room, player: Optional[Player]) -> Dict[str, Any]:
        """（重新）連線 session 的完整狀態；直接回傳，不發佈"""
        return envelope("snapshot", room.id, room.state_version, {
            "round": round_payload(room),
            "player": player_payload(player) if player else None,
        })

    def host_left(self, room_id: str, version: int) -> None:
        self.room_event(room_id, version, "host_left")
