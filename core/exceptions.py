"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

分類（API 層依分類決定 HTTP status）：
- NotFoundError：資料不存在，或呼叫者完全沒有 grant
- UnauthorizedError：grant 存在但只有 view，需要 edit
- InvalidStateError：目前的生命週期狀態不允許此操作
- InternalError：不變量被破壞，代表其他地方有 bug，不可自動修復
"""


class BoardGameTrackerException(Exception):
    """所有業務異常的基類"""
    pass


class NotFoundError(BoardGameTrackerException):
    pass


class UnauthorizedError(BoardGameTrackerException):
    pass


class InvalidStateError(BoardGameTrackerException):
    pass


class InternalError(BoardGameTrackerException):
    pass


# ============ Match 相關異常 ============

class MatchNotFound(NotFoundError):
    """對局不存在（或呼叫者沒有任何 grant）"""
    def __init__(self, match_id):
        self.match_id = match_id
        super().__init__(f"Match {match_id} not found")


class MatchPlayerNotFound(NotFoundError):
    """對局玩家不存在"""
    def __init__(self, match_player_id):
        self.match_player_id = match_player_id
        super().__init__(f"Match player {match_player_id} not found")


class TeamNotFound(NotFoundError):
    """隊伍不存在，或不屬於此對局"""
    def __init__(self, team_id):
        self.team_id = team_id
        super().__init__(f"Team {team_id} not found")


class MatchAlreadyFinished(InvalidStateError):
    """對局已結束，不允許再修改分數"""
    def __init__(self, match_id):
        self.match_id = match_id
        super().__init__(f"Match {match_id} is already finished")


# ============ Round 相關異常 ============

class RoundNotFound(NotFoundError):
    """回合不存在（或不屬於此對局的 scoresheet）"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} not found")


class RoundPlayerNotFound(NotFoundError):
    """玩家在此回合沒有對應的分數列"""
    def __init__(self, round_id, match_player_id):
        self.round_id = round_id
        self.match_player_id = match_player_id
        super().__init__(
            f"Round player for round {round_id} and match player {match_player_id} not found"
        )


class InvalidScoreValue(BoardGameTrackerException):
    """分數不合法（非有限數值，或 checkbox 回合的值不符）"""
    pass


class InvalidPlacementValue(InvalidScoreValue):
    """名次不合法（沒有任何名次、名次小於 1，或同隊成員名次不一致）"""
    pass


# ============ 權限相關異常 ============

class PermissionDenied(UnauthorizedError):
    """只有 view 權限，但操作需要 edit"""
    pass


# ============ 狀態轉換異常 ============

class InvalidStateTransition(InvalidStateError):
    """非法的狀態轉換"""
    pass


class NotManualScoresheet(InvalidStateError):
    """只有 winCondition = Manual 的 scoresheet 可以手動指定勝者"""
    pass


class InvalidCoopWinners(InvalidStateError):
    """合作模式只能全員勝利或全員失敗"""
    pass


class InvariantViolation(InternalError):
    """資料不變量被破壞（例如 running 但沒有 startTime）"""
    pass


# ============ Sharing 相關異常 ============

class ShareRequestNotFound(NotFoundError):
    """分享邀請不存在"""
    def __init__(self, request_id):
        self.request_id = request_id
        super().__init__(f"Share request {request_id} not found")


class ShareRequestAlreadyResolved(InvalidStateError):
    """分享邀請已經被接受或拒絕"""
    pass


class ShareItemNotFound(NotFoundError):
    """要分享的項目不存在，或不屬於分享者"""
    def __init__(self, item_type, item_id):
        self.item_type = item_type
        self.item_id = item_id
        super().__init__(f"{item_type} {item_id} not found")
