"""
SQLAlchemy models

資料表：
- Room：一個遊戲房間，包含它唯一那個回合的狀態
- Player：參與者的身分、資金與本回合的選擇
- PricePoint：只增不改的價格歷史（每個結算回合一筆）
- EventLog：房間生命週期事件的稽核紀錄
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class Choice(str, enum.Enum):
    BUY = "Buy"
    HOLD = "Hold"
    SELL = "Sell"


class RoundPhase(str, enum.Enum):
    IDLE = "Idle"        # 沒有進行中的回合
    OPEN = "Open"        # 玩家可以送出選擇
    LOCKED = "Locked"    # 結算中，選擇凍結


class Room(Base):
    __tablename__ = "rooms"

    id = Column(String(16), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    host_token = Column(String(64), nullable=False)
    closed = Column(Boolean, default=False, nullable=False)

    # 回合狀態（一個房間同時只會有一個回合）
    round_number = Column(Integer, default=1, nullable=False)
    phase = Column(Enum(RoundPhase), default=RoundPhase.IDLE, nullable=False)
    countdown_remaining = Column(Integer, default=0, nullable=False)
    countdown_active = Column(Boolean, default=False, nullable=False)
    news_text = Column(String(255), default="", nullable=False)
    news_impact = Column(Numeric(4, 2), default=0, nullable=False)

    price = Column(Numeric(12, 2), nullable=False)

    # 每次寫入都 +1；client 丟掉比手上舊的訊息
    state_version = Column(Integer, default=0, nullable=False)

    players = relationship("Player", back_populates="room", cascade="all, delete-orphan")
    price_history = relationship(
        "PricePoint",
        back_populates="room",
        cascade="all, delete-orphan",
        order_by="PricePoint.round_number",
    )


class Player(Base):
    __tablename__ = "players"
    __table_args__ = (
        UniqueConstraint("room_id", "session_token", name="uq_player_room_token"),
    )

    id = Column(String(16), primary_key=True)
    room_id = Column(String(16), ForeignKey("rooms.id"), nullable=False, index=True)
    session_token = Column(String(64), nullable=False)
    name = Column(String(64), nullable=False)
    capital = Column(Numeric(12, 2), nullable=False)
    choice = Column(Enum(Choice), nullable=True)
    last_vote_at = Column(DateTime(timezone=True), nullable=True)
    joined_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    room = relationship("Room", back_populates="players")


class PricePoint(Base):
    __tablename__ = "price_history"
    __table_args__ = (
        UniqueConstraint("room_id", "round_number", name="uq_price_room_round"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(16), ForeignKey("rooms.id"), nullable=False, index=True)
    round_number = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)

    room = relationship("Room", back_populates="price_history")


class EventLog(Base):
    __tablename__ = "event_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String(16), ForeignKey("rooms.id"), nullable=False, index=True)
    event_type = Column(String(32), nullable=False)
    data = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
