"""
服務層

這個 package 包含純計算邏輯，不負責狀態轉換：
- DrawService：依押注權重抽出贏家
- StakeService：押注帳本與驗證
- CountdownService：倒數計時規則
- ColorService：參與者顏色分配
- GiftService：禮物目錄與玩家庫存
- HistoryService：結算快照與玩家歷史
- StatsService：結算後的玩家統計
"""
