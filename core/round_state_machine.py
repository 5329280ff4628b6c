"""
Round 狀態機：唯一可以改變房間回合 phase 的地方

Phase 轉換：
    IDLE ──start_round──▶ OPEN ──reveal──▶ LOCKED ──settle──▶ OPEN / IDLE
                           ▲  │
                           └──┘ start_round（重新開始）

防止重複結算靠兩個帶條件的 UPDATE，而不是靠時序：
1. lock_round：OPEN + round_number=N -> LOCKED，每個回合只有一個呼叫者會贏
2. settle：LOCKED + round_number=N -> round_number=N+1，只有一個呼叫者會贏，
   且與所有帳本寫入一起 commit

reveal 和 tick 都帶著「自己要結算的回合編號」，所以手動 reveal 與倒數
歸零可以任意競爭，也不會誤鎖到自動開啟的下一回合。
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import PricePoint, Room, RoundPhase
from core.exceptions import (
    InvalidStateTransition,
    RoomClosed,
    SettlementFailed,
    UnknownRoom,
)
from core.locks import compare_and_set_room, with_room_lock
from database import get_settings, transactional
from services.ledger_service import ChoiceTally, reset_choices, settle_round, tally_choices
from services.price_engine import (
    MAX_MOVE,
    apply_to_price,
    clamp,
    compute_strategy_delta,
    round2,
    to_decimal,
    total_delta,
)
from services.state_service import bump_state_version, log_event

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    RoundPhase.IDLE: {RoundPhase.OPEN},
    RoundPhase.OPEN: {RoundPhase.OPEN, RoundPhase.LOCKED, RoundPhase.IDLE},
    RoundPhase.LOCKED: {RoundPhase.OPEN, RoundPhase.IDLE},
}


@dataclass(frozen=True)
class SettlementResult:
    room_id: str
    round_number: int          # 被結算的回合
    next_round_number: int
    next_phase: RoundPhase
    previous_price: Decimal
    price: Decimal
    strategy_delta: Decimal
    news_impact: Decimal
    total_delta: Decimal
    news_text: str
    tally: ChoiceTally
    players_settled: int
    state_version: int

    @property
    def change(self) -> Decimal:
        return self.price - self.previous_price

    @property
    def percent_change(self) -> Decimal:
        return round2(self.change / self.previous_price * 100)


@dataclass(frozen=True)
class TickResult:
    remaining: int
    counting: bool
    settlement: Optional[SettlementResult] = None
    state_version: int = 0
    expired: bool = False
    round_number: int = 0      # 這一秒所屬的回合


def _load_room(db: Session, room_id: str) -> Room:
    room = with_room_lock(room_id, db).first()
    if not room:
        raise UnknownRoom(room_id)
    return room


class RoundStateMachine:
    """回合生命週期：開始、倒數、鎖定、結算"""

    @staticmethod
    def can_transition(current: RoundPhase, target: RoundPhase) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, set())

    @staticmethod
    def transition(db: Session, room_id: str, target: RoundPhase) -> Room:
        """
        轉換回合 phase（在呼叫者的 transaction 內）

        異常：
            UnknownRoom: Room 不存在
            InvalidStateTransition: 目前 phase 無法轉到 target
        """
        room = _load_room(db, room_id)
        if not RoundStateMachine.can_transition(room.phase, target):
            raise InvalidStateTransition(
                f"Cannot transition round in room {room_id} from {room.phase.value} to {target.value}"
            )
        logger.info(f"Room {room_id} round {room.round_number}: {room.phase.value} -> {target.value}")
        room.phase = target
        return room

    @staticmethod
    @transactional
    def start_round(db: Session, room_id: str, duration: Optional[int] = None) -> Room:
        """
        開啟回合（IDLE|OPEN -> OPEN）

        流程：
        1. 檢查房間仍在營業
        2. 清除所有玩家的選擇（不留上一回合的票）
        3. 轉到 OPEN，有 duration 就啟動倒數

        參數：
            db: SQLAlchemy Session
            room_id: 房間代碼
            duration: 倒數秒數；None 或 0 = 不倒數

        異常：
            RoomClosed: Host 已離開
            InvalidStateTransition: 正在結算（LOCKED）
        """
        room = _load_room(db, room_id)
        if room.closed:
            raise RoomClosed(room_id)
        if not RoundStateMachine.can_transition(room.phase, RoundPhase.OPEN):
            raise InvalidStateTransition(
                f"Cannot start a round in room {room_id} while {room.phase.value}"
            )

        reset_choices(db, room_id)

        room = RoundStateMachine.transition(db, room_id, RoundPhase.OPEN)
        seconds = duration if duration and duration > 0 else 0
        room.countdown_remaining = seconds
        room.countdown_active = seconds > 0

        bump_state_version(db, room_id, reason="round_started")
        log_event(db, room_id, "ROUND_STARTED", round_number=room.round_number, duration=seconds)
        return room

    @staticmethod
    @transactional
    def arm_countdown(db: Session, room_id: str, seconds: int) -> Room:
        """
        對目前的回合啟動倒數，不清除已經投下的選擇

        新聞發佈後給玩家 N 秒反應用。OPEN 回合保持原狀只加上倒數；
        IDLE 時順便開啟回合（IDLE 不會有殘留的票）。

        異常：
            RoomClosed: Host 已離開
            InvalidStateTransition: 正在結算（LOCKED）
        """
        room = _load_room(db, room_id)
        if room.closed:
            raise RoomClosed(room_id)
        if room.phase == RoundPhase.LOCKED:
            raise InvalidStateTransition(f"Cannot arm a countdown in room {room_id} during settlement")
        if room.phase == RoundPhase.IDLE:
            room = RoundStateMachine.transition(db, room_id, RoundPhase.OPEN)

        seconds = seconds if seconds and seconds > 0 else 0
        room.countdown_remaining = seconds
        room.countdown_active = seconds > 0

        bump_state_version(db, room_id, reason="countdown_armed")
        log_event(db, room_id, "COUNTDOWN_ARMED", round_number=room.round_number, duration=seconds)
        return room

    @staticmethod
    @transactional
    def stage_news(db: Session, room_id: str, text: str, impact) -> Room:
        """預先放入下一次 reveal 的新聞衝擊（影響上限 ±20%）"""
        room = _load_room(db, room_id)
        if room.closed:
            raise RoomClosed(room_id)
        if room.phase == RoundPhase.LOCKED:
            raise InvalidStateTransition(f"Cannot stage news in room {room_id} during settlement")

        room.news_text = text
        room.news_impact = clamp(impact, -MAX_MOVE, MAX_MOVE)

        bump_state_version(db, room_id, reason="news_staged")
        log_event(db, room_id, "NEWS_STAGED", text=text, impact=str(room.news_impact))
        return room

    @staticmethod
    @transactional
    def lock_round(db: Session, room_id: str, round_number: Optional[int] = None) -> bool:
        """
        OPEN -> LOCKED，同時停止倒數

        參數：
            round_number: 只鎖這個回合；已經被結算並自動開啟下一回合時，
                          這次呼叫不會去鎖到下一回合

        返回：
            True 表示這次呼叫鎖住了回合；False 表示回合不是 OPEN
            （被競爭的 reveal 先鎖、閒置中、不存在或已換回合）
        """
        expected = {"phase": RoundPhase.OPEN, "closed": False}
        if round_number is not None:
            expected["round_number"] = round_number

        won = compare_and_set_room(
            db, room_id,
            expected=expected,
            values={"phase": RoundPhase.LOCKED, "countdown_active": False},
        )
        if won:
            bump_state_version(db, room_id, reason="round_locked")
            logger.info(f"Room {room_id}: round locked for settlement")
        return won

    @staticmethod
    def reveal(
        db: Session,
        room_id: str,
        round_number: Optional[int] = None,
        on_locked: Optional[Callable[[], None]] = None,
    ) -> Optional[SettlementResult]:
        """
        鎖定回合並結算

        回合已經 LOCKED、不是 OPEN，或已不是 round_number 那一回合時，
        這是 no-op 並回傳 None；手動 reveal 與倒數競爭只會結算一次。

        參數：
            round_number: 呼叫者看到的回合；None = 目前的回合
            on_locked: 鎖定 commit 之後、結算之前呼叫
        """
        if not RoundStateMachine.lock_round(db, room_id, round_number):
            logger.info(f"Reveal ignored for room {room_id}: round {round_number or 'current'} not open")
            return None
        if on_locked is not None:
            on_locked()
        return RoundStateMachine.settle(db, room_id)

    @staticmethod
    def settle(db: Session, room_id: str) -> Optional[SettlementResult]:
        """
        以一個全有或全無的單位結算 LOCKED 回合

        失敗時什麼都不寫：round_number 不變，phase 停在 LOCKED，
        直到再次呼叫 settle()。

        返回：
            SettlementResult；沒有可結算的回合時為 None

        異常：
            SettlementFailed: 資料庫寫入失敗
        """
        try:
            return RoundStateMachine._settle(db, room_id)
        except SQLAlchemyError as e:
            raise SettlementFailed(f"Settlement failed for room {room_id}, round stays locked") from e

    @staticmethod
    @transactional
    def _settle(db: Session, room_id: str) -> Optional[SettlementResult]:
        room = _load_room(db, room_id)
        if room.phase != RoundPhase.LOCKED:
            return None

        settled_round = room.round_number
        next_phase = RoundPhase.OPEN if get_settings().auto_open_next_round else RoundPhase.IDLE

        # 1. 認領這一回合；同一回合的並行 settle() 會拿到 0 rows
        claimed = compare_and_set_room(
            db, room_id,
            expected={"phase": RoundPhase.LOCKED, "round_number": settled_round},
            values={
                "phase": next_phase,
                "round_number": Room.round_number + 1,
                "countdown_active": False,
                "countdown_remaining": 0,
            },
        )
        if not claimed:
            logger.warning(f"Settlement for room {room_id} round {settled_round} already claimed")
            return None
        room = db.query(Room).filter(Room.id == room_id).first()

        # 2. 由選擇統計加上新聞算出價格變動
        tally = tally_choices(db, room_id)
        strategy = compute_strategy_delta(tally.buy_fraction, tally.sell_fraction)
        news_impact = to_decimal(room.news_impact)
        delta = total_delta(strategy, news_impact)

        previous_price = to_decimal(room.price)
        new_price = apply_to_price(previous_price, delta)

        # 3. 帳本
        players_settled = settle_round(db, room_id, delta)

        # 4. 價格歷史與房間價格
        db.add(PricePoint(room_id=room_id, round_number=settled_round, price=new_price))
        news_text = room.news_text
        room.price = new_price
        room.news_text = ""
        room.news_impact = Decimal("0")

        version = bump_state_version(db, room_id, reason="round_settled")
        log_event(
            db, room_id, "ROUND_SETTLED",
            round_number=settled_round,
            price=str(new_price),
            total_delta=str(delta),
            buy=tally.buy, hold=tally.hold, sell=tally.sell,
        )

        logger.info(
            f"Room {room_id} round {settled_round} settled: "
            f"strategy={strategy} news={news_impact} total={delta} "
            f"price {previous_price} -> {new_price} ({players_settled} players)"
        )

        return SettlementResult(
            room_id=room_id,
            round_number=settled_round,
            next_round_number=settled_round + 1,
            next_phase=next_phase,
            previous_price=previous_price,
            price=new_price,
            strategy_delta=strategy,
            news_impact=news_impact,
            total_delta=delta,
            news_text=news_text,
            tally=tally,
            players_settled=players_settled,
            state_version=version,
        )

    @staticmethod
    @transactional
    def _countdown_step(db: Session, room_id: str) -> TickResult:
        room = _load_room(db, room_id)
        if room.closed or room.phase != RoundPhase.OPEN or not room.countdown_active:
            return TickResult(remaining=room.countdown_remaining, counting=False,
                              state_version=room.state_version, round_number=room.round_number)

        room.countdown_remaining = max(0, room.countdown_remaining - 1)
        if room.countdown_remaining == 0:
            room.countdown_active = False
        version = bump_state_version(db, room_id, reason="countdown")
        return TickResult(remaining=room.countdown_remaining, counting=room.countdown_active,
                          state_version=version, expired=not room.countdown_active,
                          round_number=room.round_number)

    @staticmethod
    def tick(
        db: Session,
        room_id: str,
        on_locked: Optional[Callable[[], None]] = None,
        on_step: Optional[Callable[[TickResult], None]] = None,
    ) -> TickResult:
        """
        倒數一秒

        OPEN 且倒數中時剛好減 1。歸零的那一秒會 reveal 倒數所屬的回合；
        如果手動 reveal 先到，這次 reveal 是 no-op，也不會碰到下一回合。

        參數：
            on_locked: 歸零觸發的 reveal 鎖定後呼叫
            on_step: 這一秒 commit 之後、reveal 之前呼叫

        返回：
            TickResult；counting=False 表示倒數驅動應該停止
        """
        step = RoundStateMachine._countdown_step(db, room_id)
        if on_step is not None:
            on_step(step)
        if not step.expired:
            return step

        settlement = RoundStateMachine.reveal(db, room_id, round_number=step.round_number, on_locked=on_locked)
        return TickResult(remaining=0, counting=False, settlement=settlement,
                          state_version=step.state_version, expired=True,
                          round_number=step.round_number)
