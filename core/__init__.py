"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- 狀態機：集中管理回合的所有狀態轉換
- Manager：共享儲存端的回合與玩家生命週期
- Store：共享儲存的非同步邊界與變更通知
- Coordinator：本地鏡像與共享儲存之間的同步
- Session Controller：單一客戶端的事件迴圈
- Locks：並發控制工具
"""
