"""
Pydantic schemas

Core managers 與 API 層共用的資料結構：
- 值物件：MatchRef、PlayerTarget / TeamTarget、ScoresheetConfig
- 計算結果：CanonicalMatchPlayer、PlayerResult、FinishResult
- API request / response body
"""
from typing import Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import Permission, RoundsScore, WinCondition


# ============ Core value objects ============

class MatchRef(BaseModel):
    """
    對局的定址方式

    - original：呼叫者自己建立的對局
    - shared：透過 SharedMatch 授權取得的對局
    兩者的 id 都是底層 Match 的 id，一律交給 CanonicalResolver 解析，不可直接使用。
    """
    model_config = ConfigDict(frozen=True)

    type: Literal["original", "shared"]
    id: int


class PlayerTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["player"] = "player"
    match_player_id: int


class TeamTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["team"] = "team"
    team_id: int


class ScoresheetConfig(BaseModel):
    """
    一場對局的計分設定（建立時就檢查 scoresheet 不變量）

    不變量：
    - 合作模式只能搭配 Manual 或 Target Score
    - rounds_score = None 只能搭配 Manual 勝利條件
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    win_condition: WinCondition
    rounds_score: RoundsScore
    is_coop: bool = False
    target_score: int = 0

    @model_validator(mode="after")
    def check_invariants(self):
        if self.is_coop and self.win_condition not in (WinCondition.MANUAL, WinCondition.TARGET_SCORE):
            raise ValueError(
                f"Co-op scoresheets must use Manual or Target Score, got {self.win_condition.value}"
            )
        if self.win_condition != WinCondition.MANUAL and self.rounds_score == RoundsScore.NONE:
            raise ValueError("rounds_score None is only valid with a Manual win condition")
        return self


class CanonicalMatchPlayer(BaseModel):
    """呼叫者視角的一個對局玩家（不論是自己的還是別人分享的）"""
    model_config = ConfigDict(frozen=True)

    base_match_player_id: int
    canonical_match_id: int
    canonical_player_id: int
    original_player_id: int
    owner_id: str
    shared_with_id: Optional[str] = None
    source_type: Literal["original", "shared"]
    permission: Permission
    team_id: Optional[int] = None


class PlayerResult(BaseModel):
    """勝者 / 名次計算的輸入"""
    model_config = ConfigDict(frozen=True)

    id: int
    final_score: Optional[float] = None
    team_id: Optional[int] = None


class FinishResult(BaseModel):
    final_scores: Dict[int, Optional[float]]
    winners: Set[int]
    placements: Dict[int, Optional[int]] = Field(default_factory=dict)


# ============ API request bodies ============

class RoundScoreUpdate(BaseModel):
    target: Union[PlayerTarget, TeamTarget] = Field(..., discriminator="type")
    round_id: int
    score: Optional[float] = None


class PlayerScoreUpdate(BaseModel):
    target: Union[PlayerTarget, TeamTarget] = Field(..., discriminator="type")
    score: Optional[float] = None


class ManualWinnersSubmit(BaseModel):
    winner_ids: List[int]


class PlayerPlacement(BaseModel):
    match_player_id: int
    # None 代表這個玩家不排名
    placement: Optional[int] = Field(None, ge=1)


class PlacementsSubmit(BaseModel):
    placements: List[PlayerPlacement] = Field(..., min_length=1)


# ============ API responses ============

class StatusResponse(BaseModel):
    status: str


class FinishMatchResponse(BaseModel):
    final_scores: Dict[int, Optional[float]]
    winners: List[int]
    placements: Dict[int, Optional[int]]
