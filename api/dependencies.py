"""
Router 共用的 FastAPI dependencies
"""
from functools import lru_cache
import logging

from core.countdown import countdowns
from core.room_manager import RoomSessionManager
from core.transport import get_transport
from database import SessionLocal

logger = logging.getLogger(__name__)


@lru_cache()
def get_room_manager() -> RoomSessionManager:
    return RoomSessionManager(get_transport(), countdowns)


def get_session_factory():
    """request 以外的工作（倒數 tick）用的 session factory"""
    return SessionLocal


def start_countdown(manager: RoomSessionManager, session_factory, room_id: str) -> None:
    """
    啟動房間的每秒倒數 task

    每次 tick 開自己的 database session，在 thread pool 執行；
    啟動它的 request 早已結束。
    """
    def tick() -> bool:
        db = session_factory()
        try:
            return manager.tick(db, room_id).counting
        finally:
            db.close()

    registry = manager.countdowns or countdowns
    registry.start(room_id, tick)
