"""
計分服務：最終分數、勝者、名次的計算邏輯

純計算邏輯，不碰資料庫，也不改變 Match 的狀態（由 MatchManager 負責）

隊伍與合作模式：
- 有 team_id 的玩家先聚合成一個單位（以代表分數計），再套用勝利條件，整隊一起勝或一起輸
- 合作模式（is_coop）把全部玩家視為同一個單位，結果全員一致
"""
import logging
import math
from typing import Dict, Iterable, List, Optional, Set

from models import RoundsScore, WinCondition
from schemas import PlayerResult, ScoresheetConfig
from core.exceptions import InvariantViolation

logger = logging.getLogger(__name__)


def normalize_score(value: Optional[float]) -> Optional[float]:
    """
    把非有限數值（±Infinity、NaN）轉成 0

    有些呼叫者用 Infinity 代表「還沒有資料」，這種值絕對不能變成最終分數。
    None 保持 None（代表真正的「沒有分數」）。
    """
    if value is None:
        return None
    if not math.isfinite(value):
        logger.warning(f"Non-finite score {value!r} normalized to 0")
        return 0
    return value


def calculate_final_score(
    round_scores: Iterable[Optional[float]],
    scoresheet: ScoresheetConfig,
    manual_score: Optional[float] = None
) -> Optional[float]:
    """
    計算一個玩家的最終分數

    規則（依 scoresheet.rounds_score）：
    - Aggregate：所有回合分數加總，None 當作 0
    - Best Of：只取最好的一個回合（Highest → 最大、Lowest → 最小、
      Target → 最接近目標分數，剛好命中優先）
    - Manual：以玩家在 match 層級的 score 為準，回合分數不加總
    - None：不適用，回傳 None（只會出現在 Manual 勝利條件）

    參數：
        round_scores: 玩家每個回合的分數（可含 None）
        scoresheet: 對局的計分設定
        manual_score: MatchPlayer.score（Manual 模式使用）

    返回：
        最終分數，或 None

    範例：
        Aggregate, [3, None, 5] -> 8
    """
    scores = [normalize_score(s) for s in round_scores]

    if scoresheet.rounds_score == RoundsScore.AGGREGATE:
        return sum(s for s in scores if s is not None)

    if scoresheet.rounds_score == RoundsScore.MANUAL:
        return normalize_score(manual_score)

    if scoresheet.rounds_score == RoundsScore.BEST_OF:
        return _best_of(scores, scoresheet)

    return None


def _best_of(scores: List[Optional[float]], scoresheet: ScoresheetConfig) -> Optional[float]:
    played = [s for s in scores if s is not None]
    if not played:
        return None

    if scoresheet.win_condition == WinCondition.LOWEST_SCORE:
        return min(played)

    if scoresheet.win_condition == WinCondition.TARGET_SCORE:
        target = scoresheet.target_score
        if target in played:
            return target
        return min(played, key=lambda s: abs(s - target))

    # Highest Score 與 Manual 都取最高的回合
    return max(played)


def _unit_score(scores: List[Optional[float]]) -> Optional[float]:
    """
    一個單位（隊伍或合作全員）的代表分數：第一個有分數的成員的分數

    隊伍的回合分數會同時寫入每個成員，成員分數本來就一致；
    所有隊伍與合作單位都用同一條規則，不會因為分數是否一致而改成加總。
    """
    for score in scores:
        if score is not None:
            return score
    return None


def _group_units(players: List[PlayerResult], scoresheet: ScoresheetConfig) -> List[dict]:
    """
    把玩家分成計分單位

    返回：
        [{"members": [player_id, ...], "score": float | None}, ...]
        順序依照玩家第一次出現的順序
    """
    if scoresheet.is_coop:
        if not players:
            return []
        return [{
            "members": [p.id for p in players],
            "score": _unit_score([normalize_score(p.final_score) for p in players]),
        }]

    units: List[dict] = []
    teams: Dict[int, dict] = {}
    for p in players:
        score = normalize_score(p.final_score)
        if p.team_id is None:
            units.append({"members": [p.id], "scores": [score]})
            continue
        if p.team_id not in teams:
            teams[p.team_id] = {"members": [], "scores": []}
            units.append(teams[p.team_id])
        teams[p.team_id]["members"].append(p.id)
        teams[p.team_id]["scores"].append(score)

    return [
        {"members": unit["members"], "score": _unit_score(unit["scores"])}
        for unit in units
    ]


def calculate_winners(players: List[PlayerResult], scoresheet: ScoresheetConfig) -> Set[int]:
    """
    依勝利條件找出所有勝者

    規則：
    - Highest Score：分數等於最高分的全部勝（平手都算勝）
    - Lowest Score：分數等於最低分的全部勝
    - Target Score：分數剛好等於 target_score 的全部勝（可能 0 人）
    - Manual：永遠回傳空集合，勝者由玩家手動指定
    - 沒有分數（None）的單位永遠不會勝

    參數：
        players: 每個玩家的最終分數與隊伍
        scoresheet: 對局的計分設定

    返回：
        勝者的 match player id 集合

    範例：
        Highest, {A: 10, B: 10, C: 7} -> {A, B}
        Target 20, {A: 20, B: 19} -> {A}
    """
    if scoresheet.win_condition == WinCondition.MANUAL:
        return set()

    units = [u for u in _group_units(players, scoresheet) if u["score"] is not None]
    if not units:
        return set()

    if scoresheet.is_coop and scoresheet.win_condition != WinCondition.TARGET_SCORE:
        raise InvariantViolation(
            f"Co-op scoresheet with win condition {scoresheet.win_condition.value}"
        )

    if scoresheet.win_condition == WinCondition.HIGHEST_SCORE:
        best = max(u["score"] for u in units)
        winning = [u for u in units if u["score"] == best]
    elif scoresheet.win_condition == WinCondition.LOWEST_SCORE:
        best = min(u["score"] for u in units)
        winning = [u for u in units if u["score"] == best]
    else:
        winning = [u for u in units if u["score"] == scoresheet.target_score]

    return {member for unit in winning for member in unit["members"]}


def calculate_placements(
    players: List[PlayerResult],
    scoresheet: ScoresheetConfig
) -> Dict[int, Optional[int]]:
    """
    計算名次（同分同名次，下一個名次跳號：1, 1, 3）

    - Highest Score：分數高者在前
    - Lowest Score：分數低者在前
    - Target Score：離目標分數越近越前面
    - Manual、合作模式：不排名，全部 None
    - 沒有分數的玩家：None

    隊伍成員共享隊伍的名次。
    """
    placements: Dict[int, Optional[int]] = {p.id: None for p in players}
    if scoresheet.is_coop or scoresheet.win_condition == WinCondition.MANUAL:
        return placements

    units = [u for u in _group_units(players, scoresheet) if u["score"] is not None]

    if scoresheet.win_condition == WinCondition.HIGHEST_SCORE:
        def key(u):
            return -u["score"]
    elif scoresheet.win_condition == WinCondition.LOWEST_SCORE:
        def key(u):
            return u["score"]
    else:
        def key(u):
            return abs(u["score"] - scoresheet.target_score)

    ranked = sorted(units, key=key)
    placement = 1
    for index, unit in enumerate(ranked):
        if index > 0 and key(unit) != key(ranked[index - 1]):
            placement = index + 1
        for member in unit["members"]:
            placements[member] = placement

    return placements
