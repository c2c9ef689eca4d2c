"""
Match Manager：對局分數與結束流程

職責：
1. 修改回合分數（單一玩家或整個隊伍）
2. 修改 match 層級的分數（rounds_score = Manual）
3. 手動指定勝者（win_condition = Manual）
4. 結束對局：計算最終分數、勝者、名次，停止 timer
5. 手動指定名次（tie-breaker），同時結束對局

原則：
- 每個操作都是單一 transaction：權限檢查 -> 讀取 -> 寫入
- 任何寫入之前，先透過 CanonicalResolver 一次檢查整個集合的 edit 權限
- 隊伍寫入是一個整體，失敗時全部 rollback，不會只改一半
- 分數計算交給 scoring_service（純計算），這裡只負責狀態與持久化
"""
import logging
import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from models import Match, MatchPlayer, Round, RoundPlayer, RoundType, RoundsScore, WinCondition, utcnow
from schemas import (
    CanonicalMatchPlayer,
    FinishResult,
    MatchRef,
    PlayerResult,
    PlayerTarget,
    ScoresheetConfig,
    TeamTarget,
)
from core.canonical_resolver import CanonicalResolver, ResolvedMatch
from core.locks import lock_match_players, lock_round_players
from core.match_timer import elapsed_seconds
from core.exceptions import (
    InvalidCoopWinners,
    InvalidPlacementValue,
    InvalidScoreValue,
    InvariantViolation,
    MatchAlreadyFinished,
    MatchPlayerNotFound,
    NotManualScoresheet,
    RoundNotFound,
    RoundPlayerNotFound,
)
from services.event_service import record_event
from services.scoring_service import (
    calculate_final_score,
    calculate_placements,
    calculate_winners,
)
from database import transactional

logger = logging.getLogger(__name__)

Target = Union[PlayerTarget, TeamTarget]


def load_scoresheet_config(match: Match) -> ScoresheetConfig:
    """把 Match 的 scoresheet 快照轉成經過驗證的 ScoresheetConfig"""
    try:
        return ScoresheetConfig.model_validate(match.scoresheet)
    except ValidationError as e:
        raise InvariantViolation(
            f"Scoresheet {match.scoresheet_id} of match {match.id} is invalid: {e}"
        ) from e


def validate_score(score: Optional[float], round_obj: Optional[Round] = None) -> None:
    """
    檢查要寫入的分數

    - 不接受 ±Infinity / NaN（不用特殊數值代表「沒有資料」，沒有資料就是 None）
    - Checkbox 回合只接受 None、0、或該回合的分數（勾選）
    """
    if score is None:
        return
    if not math.isfinite(score):
        raise InvalidScoreValue(f"Score must be a finite number, got {score!r}")
    if round_obj is not None and round_obj.type == RoundType.CHECKBOX:
        if score not in (0, round_obj.score):
            raise InvalidScoreValue(
                f"Checkbox round {round_obj.id} accepts 0 or {round_obj.score}, got {score}"
            )


class MatchManager:
    """對局分數與結束流程管理器"""

    @staticmethod
    def _resolve_for_mutation(db: Session, caller_id: str, match_ref: MatchRef) -> ResolvedMatch:
        # 鎖定 Match，並拒絕已結束的對局
        resolved = CanonicalResolver.resolve_match(db, caller_id, match_ref, lock=True)
        if resolved.match.finished:
            raise MatchAlreadyFinished(resolved.match.id)
        return resolved

    @staticmethod
    def _resolve_target(
        db: Session,
        caller_id: str,
        match_ref: MatchRef,
        resolved: ResolvedMatch,
        target: Target
    ) -> List[CanonicalMatchPlayer]:
        if isinstance(target, TeamTarget):
            rows = CanonicalResolver.resolve_match_players(
                db, caller_id, match_ref, team_id=target.team_id, resolved=resolved
            )
        else:
            rows = CanonicalResolver.resolve_match_players(
                db, caller_id, match_ref, match_player_id=target.match_player_id, resolved=resolved
            )
        CanonicalResolver.require_edit(rows, caller_id)
        return rows

    @staticmethod
    @transactional
    def update_round_score(
        db: Session,
        match_ref: MatchRef,
        target: Target,
        round_id: int,
        score: Optional[float],
        caller_id: str
    ) -> List[int]:
        """
        修改一個回合的分數（玩家或整個隊伍）

        流程：
        1. 解析並鎖定 Match，拒絕已結束的對局
        2. 確認回合屬於此對局的 scoresheet，檢查分數是否合法
        3. 解析目標玩家；隊伍時要求每一個成員都是 edit
        4. 確認每個玩家都有此回合的分數列
        5. 一次寫入全部分數列

        參數：
            db: SQLAlchemy Session
            match_ref: {type: original|shared, id}
            target: PlayerTarget 或 TeamTarget
            round_id: Round id
            score: 新分數（None 代表清空）
            caller_id: 呼叫者 user id

        返回：
            被更新的 RoundPlayer id 列表

        異常：
            MatchNotFound / MatchPlayerNotFound / TeamNotFound / RoundNotFound / RoundPlayerNotFound
            PermissionDenied: 任何一個目標玩家只有 view
            MatchAlreadyFinished: 對局已結束
            InvalidScoreValue: 分數不合法
        """
        # 1. 解析並鎖定 Match
        resolved = MatchManager._resolve_for_mutation(db, caller_id, match_ref)
        match = resolved.match

        # 2. 驗證回合與分數
        round_obj = db.query(Round).filter(
            Round.id == round_id,
            Round.scoresheet_id == match.scoresheet_id
        ).first()
        if not round_obj:
            raise RoundNotFound(round_id)
        validate_score(score, round_obj)

        # 3. 解析目標玩家 + 權限（寫入前一次檢查完）
        rows = MatchManager._resolve_target(db, caller_id, match_ref, resolved, target)
        match_player_ids = [row.base_match_player_id for row in rows]

        # 4. 取得並鎖定分數列
        round_players = lock_round_players(round_id, match_player_ids, db).all()
        found = {rp.match_player_id for rp in round_players}
        missing = [mp_id for mp_id in match_player_ids if mp_id not in found]
        if missing:
            raise RoundPlayerNotFound(round_id, missing[0])

        # 5. 寫入
        for rp in round_players:
            rp.score = score

        record_event(db, match.id, "ROUND_SCORE_UPDATED", caller_id, {
            "round_id": round_id,
            "match_player_ids": match_player_ids,
            "score": score
        })
        logger.info(
            f"Round {round_id} score set to {score} for match players {match_player_ids} "
            f"(match={match.id}, caller={caller_id})"
        )

        return [rp.id for rp in round_players]

    @staticmethod
    @transactional
    def update_player_score(
        db: Session,
        match_ref: MatchRef,
        target: Target,
        score: Optional[float],
        caller_id: str
    ) -> List[int]:
        """
        直接修改 match 層級的分數（rounds_score = Manual 時使用）

        權限規則與 update_round_score 相同：隊伍要求每一個成員都是 edit。

        返回：
            被更新的 MatchPlayer id 列表
        """
        resolved = MatchManager._resolve_for_mutation(db, caller_id, match_ref)
        match = resolved.match
        validate_score(score)

        rows = MatchManager._resolve_target(db, caller_id, match_ref, resolved, target)
        match_player_ids = [row.base_match_player_id for row in rows]

        match_players = db.query(MatchPlayer).filter(
            MatchPlayer.id.in_(match_player_ids)
        ).all()
        for mp in match_players:
            mp.score = score

        record_event(db, match.id, "PLAYER_SCORE_UPDATED", caller_id, {
            "match_player_ids": match_player_ids,
            "score": score
        })
        logger.info(f"Match score set to {score} for match players {match_player_ids} (match={match.id})")

        return match_player_ids

    @staticmethod
    @transactional
    def submit_manual_winners(
        db: Session,
        match_ref: MatchRef,
        winner_ids: Iterable[int],
        caller_id: str
    ) -> Set[int]:
        """
        手動指定勝者（只適用 win_condition = Manual）

        規則：
        - 列出的玩家 winner=True，其他全部 winner=False
        - 隊伍成員任何一人被列出，整隊都標記為勝者（不會只標一半）
        - 合作模式只能全員勝或全員不勝
        - 同時寫入 scoring_service 計算的最終分數

        返回：
            最後標記為勝者的 match player id 集合

        異常：
            NotManualScoresheet: scoresheet 不是 Manual
            PermissionDenied: 任何一個玩家只有 view
            MatchPlayerNotFound: 勝者不屬於此對局
            InvalidCoopWinners: 合作模式只標了部分玩家
            MatchAlreadyFinished: 對局已結束
        """
        # 1. 解析並鎖定 Match
        resolved = MatchManager._resolve_for_mutation(db, caller_id, match_ref)
        match = resolved.match

        # 2. 驗證 scoresheet
        config = load_scoresheet_config(match)
        if config.win_condition != WinCondition.MANUAL:
            raise NotManualScoresheet(
                f"Match {match.id} uses {config.win_condition.value}, not Manual"
            )

        # 3. 全部玩家都必須是 edit
        rows = CanonicalResolver.resolve_match_players(db, caller_id, match_ref, resolved=resolved)
        CanonicalResolver.require_edit(rows, caller_id)

        # 4. 驗證勝者
        requested = set(winner_ids)
        all_ids = {row.base_match_player_id for row in rows}
        unknown = sorted(requested - all_ids)
        if unknown:
            raise MatchPlayerNotFound(unknown[0])

        if config.is_coop and requested and requested != all_ids:
            raise InvalidCoopWinners(
                f"Co-op match {match.id} must mark every player or no one as winner"
            )

        winning_teams = {row.team_id for row in rows if row.base_match_player_id in requested and row.team_id}
        winners = {
            row.base_match_player_id for row in rows
            if row.base_match_player_id in requested or row.team_id in winning_teams
        }

        # 5. 寫入分數與勝者
        match_players = lock_match_players(match.id, db).all()
        final_scores = MatchManager._final_scores(db, match_players, config)
        for mp in match_players:
            mp.score = final_scores[mp.id]
            mp.winner = mp.id in winners

        record_event(db, match.id, "MANUAL_WINNERS_SUBMITTED", caller_id, {
            "winners": sorted(winners)
        })
        logger.info(f"Manual winners {sorted(winners)} submitted for match {match.id}")

        return winners

    @staticmethod
    @transactional
    def finish_match(
        db: Session,
        match_ref: MatchRef,
        caller_id: str,
        now: Optional[datetime] = None
    ) -> FinishResult:
        """
        結束對局（終止狀態）

        流程：
        1. 解析並鎖定 Match，拒絕已結束的對局
        2. 全部玩家都必須是 edit
        3. 計算每個玩家的最終分數
        4. 計算勝者（Manual 時沿用已手動指定的勝者）與名次
        5. 寫入 score / winner / placement
        6. 停止 timer：計時中的片段計入 duration，記錄 end_time，finished=True

        返回：
            FinishResult(final_scores, winners, placements)

        異常：
            MatchNotFound: Match 或 grant 不存在
            PermissionDenied: 任何一個玩家只有 view
            MatchAlreadyFinished: 對局已結束
            InvariantViolation: scoresheet 設定不合法，或計時中卻沒有 start_time
        """
        now = now or utcnow()

        # 1. 解析並鎖定 Match
        resolved = MatchManager._resolve_for_mutation(db, caller_id, match_ref)
        match = resolved.match
        CanonicalResolver.require_match_edit(resolved, caller_id)

        # 2. 權限
        rows = CanonicalResolver.resolve_match_players(db, caller_id, match_ref, resolved=resolved)
        CanonicalResolver.require_edit(rows, caller_id)

        if match.running and match.start_time is None:
            raise InvariantViolation(f"Match {match.id} is running without a start time")

        # 3. 最終分數
        config = load_scoresheet_config(match)
        match_players = lock_match_players(match.id, db).all()
        final_scores = MatchManager._final_scores(db, match_players, config)

        # 4. 勝者與名次
        results = [
            PlayerResult(id=mp.id, final_score=final_scores[mp.id], team_id=mp.team_id)
            for mp in match_players
        ]
        if config.win_condition == WinCondition.MANUAL:
            winners = {mp.id for mp in match_players if mp.winner}
        else:
            winners = calculate_winners(results, config)
        placements = calculate_placements(results, config)

        # 5. 寫入
        for mp in match_players:
            mp.score = final_scores[mp.id]
            mp.winner = mp.id in winners
            mp.placement = placements[mp.id]

        # 6. 停止 timer
        MatchManager._stop_timer(match, now)

        record_event(db, match.id, "MATCH_FINISHED", caller_id, {
            "duration": match.duration,
            "winners": sorted(winners)
        })
        logger.info(
            f"Match {match.id} finished by {caller_id}: winners={sorted(winners)}, duration={match.duration}s"
        )

        return FinishResult(final_scores=final_scores, winners=winners, placements=placements)

    @staticmethod
    @transactional
    def submit_placements(
        db: Session,
        match_ref: MatchRef,
        placements: Dict[int, Optional[int]],
        caller_id: str,
        now: Optional[datetime] = None
    ) -> FinishResult:
        """
        手動指定名次並結束對局（平手時的 tie-breaker）

        規則：
        - placements 至少要有一筆；名次為 None 的玩家不更新
        - 名次 1 的玩家 winner=True，其他被指定名次的玩家 winner=False
        - 隊伍成員任何一人被指定名次，整隊套用同一個名次；同隊名次不一致就拒絕
        - 沒列出的玩家保留原本的名次與勝負
        - 同時寫入最終分數、停止 timer，對局進入 FINISHED

        參數：
            db: SQLAlchemy Session
            match_ref: {type: original|shared, id}
            placements: {match_player_id: placement}
            caller_id: 呼叫者 user id
            now: 目前時間（測試時注入）

        返回：
            FinishResult（winners / placements 為寫入後的值）

        異常：
            MatchNotFound: Match 或 grant 不存在
            PermissionDenied: 對局或任何一個玩家只有 view
            MatchPlayerNotFound: 玩家不屬於此對局
            InvalidPlacementValue: 沒有名次、名次小於 1，或同隊名次不一致
            MatchAlreadyFinished: 對局已結束
            InvariantViolation: 計時中卻沒有 start_time
        """
        now = now or utcnow()

        # 1. 解析並鎖定 Match
        resolved = MatchManager._resolve_for_mutation(db, caller_id, match_ref)
        match = resolved.match
        CanonicalResolver.require_match_edit(resolved, caller_id)

        # 2. 全部玩家都必須是 edit
        rows = CanonicalResolver.resolve_match_players(db, caller_id, match_ref, resolved=resolved)
        CanonicalResolver.require_edit(rows, caller_id)

        if match.running and match.start_time is None:
            raise InvariantViolation(f"Match {match.id} is running without a start time")

        # 3. 驗證名次
        if not placements:
            raise InvalidPlacementValue(f"No placements submitted for match {match.id}")
        all_ids = {row.base_match_player_id for row in rows}
        unknown = sorted(set(placements) - all_ids)
        if unknown:
            raise MatchPlayerNotFound(unknown[0])
        invalid = sorted(mp_id for mp_id, value in placements.items() if value is not None and value < 1)
        if invalid:
            raise InvalidPlacementValue(f"Placements must be 1 or greater (match players {invalid})")

        assigned = MatchManager._expand_team_placements(rows, placements)

        # 4. 寫入分數、名次、勝者
        config = load_scoresheet_config(match)
        match_players = lock_match_players(match.id, db).all()
        final_scores = MatchManager._final_scores(db, match_players, config)
        for mp in match_players:
            mp.score = final_scores[mp.id]
            if mp.id in assigned:
                mp.placement = assigned[mp.id]
                mp.winner = assigned[mp.id] == 1

        # 5. 停止 timer
        MatchManager._stop_timer(match, now)

        winners = {mp.id for mp in match_players if mp.winner}
        record_event(db, match.id, "PLACEMENTS_SUBMITTED", caller_id, {
            "placements": {str(mp_id): value for mp_id, value in sorted(assigned.items())},
            "duration": match.duration
        })
        logger.info(
            f"Placements {assigned} submitted for match {match.id} by {caller_id}, match finished"
        )

        return FinishResult(
            final_scores=final_scores,
            winners=winners,
            placements={mp.id: mp.placement for mp in match_players}
        )

    @staticmethod
    def _expand_team_placements(
        rows: List[CanonicalMatchPlayer],
        placements: Dict[int, Optional[int]]
    ) -> Dict[int, int]:
        """把指定的名次套用到整個隊伍，返回 {match_player_id: placement}（不含 None）"""
        team_placements: Dict[int, int] = {}
        for row in rows:
            value = placements.get(row.base_match_player_id)
            if row.team_id is None or value is None:
                continue
            if team_placements.setdefault(row.team_id, value) != value:
                raise InvalidPlacementValue(
                    f"Members of team {row.team_id} were given different placements"
                )

        assigned: Dict[int, int] = {}
        for row in rows:
            if row.team_id is not None and row.team_id in team_placements:
                assigned[row.base_match_player_id] = team_placements[row.team_id]
            elif placements.get(row.base_match_player_id) is not None:
                assigned[row.base_match_player_id] = placements[row.base_match_player_id]
        return assigned

    @staticmethod
    def _stop_timer(match: Match, now: datetime) -> None:
        # 計時中的片段計入 duration，對局進入 FINISHED
        if match.running:
            match.duration = (match.duration or 0) + elapsed_seconds(match.start_time, now)
        match.running = False
        match.start_time = None
        match.end_time = now
        match.finished = True

    @staticmethod
    def _final_scores(
        db: Session,
        match_players: List[MatchPlayer],
        config: ScoresheetConfig
    ) -> Dict[int, Optional[float]]:
        """
        計算每個玩家的最終分數

        rounds_score = None 時沒有可計算的分數，保留玩家目前的 score。
        """
        if config.rounds_score == RoundsScore.NONE:
            return {mp.id: mp.score for mp in match_players}

        round_scores: Dict[int, List[Optional[float]]] = {mp.id: [] for mp in match_players}
        if match_players:
            rows = (
                db.query(RoundPlayer)
                .join(Round, RoundPlayer.round_id == Round.id)
                .filter(RoundPlayer.match_player_id.in_(list(round_scores)))
                .order_by(Round.order)
                .all()
            )
            for rp in rows:
                round_scores[rp.match_player_id].append(rp.score)

        return {
            mp.id: calculate_final_score(round_scores[mp.id], config, manual_score=mp.score)
            for mp in match_players
        }
