"""
HTTP API 與 WebSocket 訊息的 Pydantic request / response 模型
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from models import Choice, Player, Room, RoundPhase


# ============ Room ============

class RoomCreate(BaseModel):
    host_token: Optional[str] = None


class RoomCreateResponse(BaseModel):
    room_id: str
    host_token: str
    join_url: str


class HostAction(BaseModel):
    host_token: str = Field(..., min_length=1)


class RoundStateResponse(BaseModel):
    round_number: int
    phase: RoundPhase
    countdown_remaining: int
    countdown_active: bool
    news_text: str
    price: float
    closed: bool
    state_version: int

    @classmethod
    def from_room(cls, room: Room) -> "RoundStateResponse":
        return cls(
            round_number=room.round_number,
            phase=room.phase,
            countdown_remaining=room.countdown_remaining,
            countdown_active=room.countdown_active,
            news_text=room.news_text,
            price=float(room.price),
            closed=room.closed,
            state_version=room.state_version,
        )


class PricePointResponse(BaseModel):
    round_number: int
    price: float


class RoomStateResponse(BaseModel):
    room_id: str
    round: RoundStateResponse
    history: List[PricePointResponse]


class JoinLinkResponse(BaseModel):
    room_id: str


# ============ Player ============

class PlayerJoin(BaseModel):
    session_token: str = Field(..., min_length=1)
    name: str = ""


class LocalPlayerCreate(HostAction):
    name: str = ""


class PlayerResponse(BaseModel):
    player_id: str
    room_id: str
    name: str
    capital: float
    choice: Optional[Choice] = None
    has_chosen: bool = False

    @classmethod
    def from_player(cls, player: Player, include_choice: bool = True) -> "PlayerResponse":
        return cls(
            player_id=player.id,
            room_id=player.room_id,
            name=player.name,
            capital=float(player.capital),
            choice=player.choice if include_choice else None,
            has_chosen=player.choice is not None,
        )


class LocalPlayerResponse(PlayerResponse):
    session_token: str


class ResumeResponse(BaseModel):
    player: PlayerResponse
    round: RoundStateResponse


class ChoiceSubmit(BaseModel):
    session_token: str = Field(..., min_length=1)
    choice: Choice


class ActionResponse(BaseModel):
    status: str


# ============ Round ============

class StartRound(HostAction):
    duration_seconds: Optional[int] = Field(None, ge=1, le=3600)


class RandomNews(HostAction):
    duration_seconds: Optional[int] = Field(None, ge=1, le=3600)
    start_countdown: bool = False


class NewsResponse(BaseModel):
    text: str
    round: RoundStateResponse


class SettlementResponse(BaseModel):
    round_number: int
    text: str
    price: float
    change: float
    percent_change: float
    strategy_delta: float
    news_impact: float
    total_delta: float
    buy: int
    hold: int
    sell: int


class RevealResponse(BaseModel):
    status: str
    settlement: Optional[SettlementResponse] = None

    @classmethod
    def from_result(cls, result) -> "RevealResponse":
        if result is None:
            return cls(status="ignored")
        return cls(
            status="settled",
            settlement=SettlementResponse(
                round_number=result.round_number,
                text=result.news_text,
                price=float(result.price),
                change=float(result.change),
                percent_change=float(result.percent_change),
                strategy_delta=float(result.strategy_delta),
                news_impact=float(result.news_impact),
                total_delta=float(result.total_delta),
                buy=result.tally.buy,
                hold=result.tally.hold,
                sell=result.tally.sell,
            ),
        )


# ============ WebSocket payloads ============
# 欄位名稱沿用 client 的 camelCase

class SocketJoin(BaseModel):
    name: Optional[str] = None


class SocketStartRound(BaseModel):
    durationSeconds: Optional[int] = Field(None, ge=1, le=3600)


class SocketRandomNews(SocketStartRound):
    startCountdown: bool = False
