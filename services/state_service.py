"""
狀態版本服務

每次寫入房間都會把 Room.state_version +1。發佈的訊息帶著版本號，
client 可以丟掉重複與遲到的訊息。
"""
import logging

from sqlalchemy.orm import Session

from models import Room, EventLog

logger = logging.getLogger(__name__)


def bump_state_version(db: Session, room_id: str, reason: str) -> int:
    """
    在呼叫者的 transaction 內把房間的狀態版本 +1

    參數：
        db: SQLAlchemy Session
        room_id: 房間代碼
        reason: 簡短標籤，只用於 log

    返回：
        新的版本號
    """
    room = db.query(Room).filter(Room.id == room_id).first()
    room.state_version = (room.state_version or 0) + 1
    db.flush()
    logger.debug(f"Room {room_id} state_version -> {room.state_version} ({reason})")
    return room.state_version


def log_event(db: Session, room_id: str, event_type: str, **data) -> None:
    db.add(EventLog(room_id=room_id, event_type=event_type, data=data))
