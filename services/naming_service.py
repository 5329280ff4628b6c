"""
Naming service：房間代碼、player id、預設名稱與加入連結

純計算邏輯，不負責狀態轉換
"""
import random
import secrets
import string
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit

ROOM_CODE_LENGTH = 6
PLAYER_ID_LENGTH = 7


def generate_room_code() -> str:
    """
    隨機 6 碼房間代碼（大寫英文字母與數字）

    範例：AB3Z9Q, K7MMP2

    注意：
    - 這裡不檢查唯一性（碰撞時由呼叫者重新產生）
    - 36^6 ≈ 22 億組代碼
    """
    alphabet = string.ascii_uppercase + string.digits
    return ''.join(random.choices(alphabet, k=ROOM_CODE_LENGTH))


def generate_player_id() -> str:
    """簡短的不透明 player id，例如 'k8z2q1m'"""
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=PLAYER_ID_LENGTH))


def generate_session_token() -> str:
    return secrets.token_urlsafe(16)


def default_player_name(player_id: str) -> str:
    """玩家沒有輸入名字時的預設名稱：Player-k8z2"""
    return f"Player-{player_id[:4]}"


def normalize_room_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def build_join_url(base_url: str, room_id: str) -> str:
    """
    分享用的連結：開啟的人會以玩家身分綁定到這個房間

    範例：
        build_join_url("http://host:8000/", "AB3Z9Q")
        -> "http://host:8000/?join=AB3Z9Q"
    """
    parts = urlsplit(base_url)
    path = parts.path or "/"
    return f"{parts.scheme}://{parts.netloc}{path}?{urlencode({'join': room_id})}"


def parse_join_code(url: str) -> Optional[str]:
    """從加入連結取出房間代碼，沒有的話回傳 None"""
    values = parse_qs(urlsplit(url).query).get("join")
    if not values:
        return None
    code = normalize_room_code(values[0])
    return code or None
