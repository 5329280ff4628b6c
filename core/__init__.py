"""
核心業務邏輯層

這個 package 包含房間與回合的邏輯：
- RoundStateMachine：集中管理所有回合 phase 轉換
- RoomSessionManager：房間生命週期、角色、加入 / 重新加入
- Transport：即時同步的 publish / subscribe 邊界
- Locks：並發控制工具
"""
