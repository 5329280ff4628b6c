"""
News service：Host 可以抽取的市場頭條池

每則頭條帶有一個影響幅度，在下一次 reveal 時加到回合的多數訊號上。
"""
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from database import get_settings


@dataclass(frozen=True)
class News:
    text: str
    impact: Decimal


NEWS_POOL = (
    News("Central bank cuts rates, markets turn optimistic.", Decimal("0.05")),
    News("Rumors of a major default trigger panic selling.", Decimal("-0.07")),
    News("Earnings strongly beat expectations, analysts upgrade targets.", Decimal("0.08")),
    News("Geopolitical tensions escalate, risk-off mood in markets.", Decimal("-0.06")),
    News("No major news: markets relatively calm.", Decimal("0.00")),
)


def draw_news(rng: Optional[random.Random] = None) -> News:
    """從新聞池平均抽一則頭條"""
    return (rng or random).choice(NEWS_POOL)


def news_countdown(duration_seconds: Optional[int] = None, start_countdown: bool = False) -> Optional[int]:
    """
    抽完新聞後要啟動的倒數秒數

    明確的 duration 優先；否則 start_countdown 使用設定的
    news_countdown_seconds。None 表示只放入新聞，不倒數。
    """
    if duration_seconds:
        return duration_seconds
    if start_countdown:
        return get_settings().news_countdown_seconds
    return None
