"""
Price engine：把回合的選擇統計轉成市場變動

純計算邏輯，不存取資料庫，也不負責狀態轉換

規則：
┌──────────────────────────────────────┬──────────────┐
│ 選擇統計                              │ 策略 Δ       │
├──────────────────────────────────────┼──────────────┤
│ buy > 40% 且 buy > sell               │ +6%          │
│ sell > 40% 且 sell > buy              │ -6%          │
│ 其他（平手、多數不夠強）               │  0           │
└──────────────────────────────────────┴──────────────┘

總 Δ = clamp(策略 Δ + 新聞影響, -20%, +20%)

玩家依實際的總變動（含新聞）結算，而不是只看策略訊號。
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from models import Choice

Number = Union[Decimal, float, int]

STRONG_SIGNAL_THRESHOLD = Decimal("0.4")
STRATEGY_UP = Decimal("0.06")
STRATEGY_DOWN = Decimal("-0.06")
MAX_MOVE = Decimal("0.20")

_CENTS = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # 經過 str() 讓 0.1 保持 0.1，而不是它的二進位展開
    return Decimal(str(value))


def round2(value: Number) -> Decimal:
    """四捨五入到小數點後 2 位"""
    return to_decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP)


def clamp(value: Number, lo: Number, hi: Number) -> Decimal:
    return max(to_decimal(lo), min(to_decimal(hi), to_decimal(value)))


def compute_strategy_delta(buy_fraction: Number, sell_fraction: Number) -> Decimal:
    """
    由 Buy 與 Sell 的比例算出多數訊號

    參數：
        buy_fraction: Buy 票數 / 總玩家數（含棄權者）
        sell_fraction: Sell 票數 / 總玩家數

    返回：
        Decimal("0.06")、Decimal("-0.06") 或 Decimal("0")

    範例：
        compute_strategy_delta(2/3, 1/3) -> 0.06
        compute_strategy_delta(0.4, 0.1) -> 0   (門檻是嚴格大於)
        compute_strategy_delta(0.5, 0.5) -> 0   (平手)
    """
    pb = to_decimal(buy_fraction)
    ps = to_decimal(sell_fraction)

    if pb > STRONG_SIGNAL_THRESHOLD and pb > ps:
        return STRATEGY_UP
    if ps > STRONG_SIGNAL_THRESHOLD and ps > pb:
        return STRATEGY_DOWN
    return Decimal("0")


def total_delta(strategy_delta: Number, news_impact: Number) -> Decimal:
    """策略訊號加上新聞衝擊，每回合上限 ±20%"""
    return clamp(to_decimal(strategy_delta) + to_decimal(news_impact), -MAX_MOVE, MAX_MOVE)


def apply_to_price(price: Number, delta: Number) -> Decimal:
    return round2(to_decimal(price) * (1 + to_decimal(delta)))


def player_effect(choice: Optional[Choice], delta: Number) -> Decimal:
    """
    每位玩家這一回合的報酬率

    - Buy：上漲賺 |Δ|，否則賠 |Δ|
    - Sell：與 Buy 相反
    - Hold 與沒有選擇不受影響
    """
    d = to_decimal(delta)
    if choice == Choice.BUY:
        return abs(d) if d > 0 else -abs(d)
    if choice == Choice.SELL:
        return abs(d) if d < 0 else -abs(d)
    return Decimal("0")


def apply_to_player(capital: Number, choice: Optional[Choice], delta: Number) -> Decimal:
    """
    一回合後的新資金

    沒有選擇的玩家原封不動（不重新四捨五入）。
    """
    if choice is None:
        return to_decimal(capital)
    return round2(to_decimal(capital) * (1 + player_effect(choice, delta)))
