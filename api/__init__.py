"""
HTTP / WebSocket 層

Router 只負責轉換 request 與異常，遊戲邏輯全部在 core/ 與 services/
"""
