"""
服務層

這個 package 包含計算與寫入輔助，不負責 phase 轉換：
- PriceEngine：多數訊號、新聞上限、價格 / 資金更新
- Ledger：玩家身分、選擇與結算寫入
- NewsService：新聞池
- NamingService：房間代碼、id、加入連結
- StateService：房間狀態版本與事件紀錄
"""
