"""
API 路由

- rounds：目前回合、加入、關閉、事件紀錄、歷史
- players：玩家身分、戰績、禮物庫存
- events：回合變更的 Server-Sent Events
"""
