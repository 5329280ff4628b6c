"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理
"""


class MarketGameException(Exception):
    """所有遊戲異常的基類"""
    pass


# ============ Room 相關異常 ============

class UnknownRoom(MarketGameException):
    """房間不存在（對 session 顯示為 "cannot join"）"""
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class RoomClosed(MarketGameException):
    """Host 已離開，房間不再接受任何寫入"""
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Room {room_id} is closed")


class NotHost(MarketGameException):
    """沒有 Host 角色的 session 要求執行 Host 專屬動作"""
    pass


# ============ Round 相關異常 ============

class RoundLocked(MarketGameException):
    """回合不是 Open 時送出選擇"""
    def __init__(self, room_id, phase):
        self.room_id = room_id
        self.phase = phase
        super().__init__(f"Round in room {room_id} is not open (phase: {phase.value})")


class InvalidStateTransition(MarketGameException):
    """非法的狀態轉換"""
    pass


class SettlementFailed(MarketGameException):
    """結算寫入失敗；回合停在 Locked 直到重試"""
    pass


# ============ Player 相關異常 ============

class PlayerNotFound(MarketGameException):
    """玩家不存在於這個房間"""
    def __init__(self, player_id):
        self.player_id = player_id
        super().__init__(f"Player {player_id} not found")


# ============ Transport 相關異常 ============

class TransportUnavailable(MarketGameException):
    """沒有設定即時通道，同步退化為只在本機"""
    pass
