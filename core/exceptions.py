"""
自定義異常類別

集中管理所有業務邏輯異常，方便 Coordinator 與 API 層統一處理

分類：
- ValidationError：輸入不合法（押注金額、加入條件），本地直接拒絕，不重試
- ConflictError：compare-and-set 輸掉競爭，改為同步遠端狀態，不重試同一轉換
- TransportError：共享儲存無法連線或逾時，進入本地模擬模式（僅限當前回合）
- InvalidTransitionError：程式誤用，記錄後視為 no-op
- EmptyPoolError / DrawFailedError：理論上不會發生，回合強制結算且無贏家
"""


class WheelGameException(Exception):
    """所有遊戲異常的基類"""
    pass


# ============ 輸入驗證 ============

class ValidationError(WheelGameException):
    """輸入不合法（本地拒絕，不重試）"""
    pass


class InvalidStakeError(ValidationError):
    """押注不合法：金額為負或非有限數、總權重 <= 0、禮物已被押注"""
    pass


class JoinError(ValidationError):
    """無法加入回合"""
    pass


class RoundFullError(JoinError):
    """回合人數已滿（15 人）"""
    def __init__(self, round_id, limit):
        self.round_id = round_id
        self.limit = limit
        super().__init__(f"Round {round_id} is full ({limit} participants)")


class RoundNotOpenError(JoinError):
    """回合已不接受加入（已鎖定或結算）"""
    def __init__(self, round_id, status):
        self.round_id = round_id
        self.status = status
        super().__init__(f"Round {round_id} is not open (status: {status})")


# ============ 並發 / 傳輸 ============

class ConflictError(WheelGameException):
    """寫入衝突：compare-and-set 失敗、回合已存在等"""
    pass


class TransportError(WheelGameException):
    """共享儲存無法連線或逾時"""
    pass


# ============ 狀態轉換異常 ============

class InvalidTransitionError(WheelGameException):
    """非法的狀態轉換"""
    def __init__(self, round_id, current, target):
        self.round_id = round_id
        self.current = current
        self.target = target
        super().__init__(f"Round {round_id}: cannot transition {current} -> {target}")


# ============ 抽獎 ============

class EmptyPoolError(WheelGameException):
    """抽獎池為空或總權重 <= 0"""
    pass


class DrawFailedError(WheelGameException):
    """
    抽獎失敗

    settlement 帶有強制結算（無贏家、needs_inspection=True）後的結果，
    呼叫端應該寫入這個結果而不是重試
    """
    def __init__(self, round_id, settlement, cause=None):
        self.round_id = round_id
        self.settlement = settlement
        self.cause = cause
        super().__init__(f"Draw failed for round {round_id}: {cause}")


# ============ 查無資料 ============

class RoundNotFound(WheelGameException):
    """回合不存在"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} not found")


class PlayerNotFound(WheelGameException):
    """玩家不存在"""
    def __init__(self, player_id):
        self.player_id = player_id
        super().__init__(f"Player {player_id} not found")


class GiftNotFound(WheelGameException):
    """禮物不存在"""
    def __init__(self, gift_id):
        self.gift_id = gift_id
        super().__init__(f"Gift {gift_id} not found")
