"""
Canonical Resolver：把 original / shared 兩種定址方式收斂成同一筆資料

職責：
1. 依 MatchRef 找到底層的 Match 與呼叫者的權限（view / edit）
2. 為每個 MatchPlayer 產生呼叫者視角的 CanonicalMatchPlayer
3. 提供 edit 權限檢查（隊伍操作要求「每一個」成員都是 edit）

原則：
- 唯讀：不做任何寫入，只是每次 mutation 之前的關卡
- 所有 mutation 都必須先經過這裡，權限邏輯只定義一次
- 不幫呼叫者縮小範圍：隊伍裡有任何一人不是 edit，就由呼叫者整筆拒絕
"""
from typing import Dict, List, NamedTuple, Optional
import logging

from sqlalchemy.orm import Session

from models import (
    Match,
    MatchPlayer,
    Permission,
    SharedMatch,
    SharedMatchPlayer,
    SharedPlayer,
    Team,
)
from schemas import CanonicalMatchPlayer, MatchRef
from core.locks import with_match_lock
from core.exceptions import (
    MatchNotFound,
    MatchPlayerNotFound,
    PermissionDenied,
    TeamNotFound,
)

logger = logging.getLogger(__name__)


class ResolvedMatch(NamedTuple):
    match: Match
    permission: Permission
    owner_id: str
    shared_with_id: Optional[str]
    shared_match: Optional[SharedMatch]

    @property
    def source_type(self) -> str:
        return "shared" if self.shared_match is not None else "original"


class CanonicalResolver:
    """Match / MatchPlayer 的權限與身分解析器"""

    @staticmethod
    def resolve_match(
        db: Session,
        caller_id: str,
        match_ref: MatchRef,
        lock: bool = False
    ) -> ResolvedMatch:
        """
        解析 MatchRef，取得底層 Match 與呼叫者權限

        規則：
        - original：match.created_by 必須是呼叫者，權限永遠是 edit
        - shared：必須存在 match_id = ref.id 且 shared_with_id = 呼叫者 的 SharedMatch，
          權限取自 grant 的 permission

        參數：
            db: SQLAlchemy Session
            caller_id: 呼叫者 user id
            match_ref: {type: original|shared, id}
            lock: True 時以 SELECT ... FOR UPDATE 鎖住 Match（mutation 使用）

        返回：
            ResolvedMatch

        異常：
            MatchNotFound: Match 不存在、不是呼叫者的，或沒有任何 grant
        """
        query = with_match_lock(match_ref.id, db) if lock else db.query(Match).filter(Match.id == match_ref.id)

        if match_ref.type == "original":
            match = query.filter(Match.created_by == caller_id).first()
            if not match:
                raise MatchNotFound(match_ref.id)
            return ResolvedMatch(
                match=match,
                permission=Permission.EDIT,
                owner_id=match.created_by,
                shared_with_id=None,
                shared_match=None
            )

        grant = db.query(SharedMatch).filter(
            SharedMatch.match_id == match_ref.id,
            SharedMatch.shared_with_id == caller_id
        ).first()
        if not grant:
            raise MatchNotFound(match_ref.id)

        match = query.first()
        if not match:
            raise MatchNotFound(match_ref.id)

        return ResolvedMatch(
            match=match,
            permission=grant.permission,
            owner_id=match.created_by,
            shared_with_id=caller_id,
            shared_match=grant
        )

    @staticmethod
    def resolve_match_players(
        db: Session,
        caller_id: str,
        match_ref: MatchRef,
        match_player_id: Optional[int] = None,
        team_id: Optional[int] = None,
        resolved: Optional[ResolvedMatch] = None
    ) -> List[CanonicalMatchPlayer]:
        """
        產生呼叫者視角的 CanonicalMatchPlayer（每個 MatchPlayer 一筆）

        流程：
        1. 解析 Match（可傳入已解析的 resolved，避免重複查詢）
        2. 依 match_player_id / team_id 過濾 MatchPlayer
        3. shared 時，逐一套用 SharedMatchPlayer 的個別權限與 SharedPlayer 的本地對應

        參數：
            match_player_id: 只取這個玩家
            team_id: 只取這個隊伍的全部成員
            resolved: 已經由 resolve_match 取得的結果

        返回：
            CanonicalMatchPlayer 列表（依 MatchPlayer.id 排序）

        異常：
            MatchNotFound: Match 或 grant 不存在
            MatchPlayerNotFound: 指定的玩家不屬於此對局
            TeamNotFound: 指定的隊伍不屬於此對局，或沒有成員
        """
        if resolved is None:
            resolved = CanonicalResolver.resolve_match(db, caller_id, match_ref)
        match = resolved.match

        query = db.query(MatchPlayer).filter(MatchPlayer.match_id == match.id)

        if team_id is not None:
            team = db.query(Team).filter(Team.id == team_id, Team.match_id == match.id).first()
            if not team:
                raise TeamNotFound(team_id)
            query = query.filter(MatchPlayer.team_id == team_id)

        if match_player_id is not None:
            query = query.filter(MatchPlayer.id == match_player_id)

        match_players = query.order_by(MatchPlayer.id).all()

        if match_player_id is not None and not match_players:
            raise MatchPlayerNotFound(match_player_id)
        if team_id is not None and not match_players:
            raise TeamNotFound(team_id)

        if resolved.shared_match is None:
            return [
                CanonicalMatchPlayer(
                    base_match_player_id=mp.id,
                    canonical_match_id=match.id,
                    canonical_player_id=mp.player_id,
                    original_player_id=mp.player_id,
                    owner_id=resolved.owner_id,
                    shared_with_id=None,
                    source_type="original",
                    permission=Permission.EDIT,
                    team_id=mp.team_id
                )
                for mp in match_players
            ]

        overrides = CanonicalResolver._shared_match_players(db, resolved.shared_match, match_players)
        linked = CanonicalResolver._linked_players(db, caller_id, match_players)

        rows = []
        for mp in match_players:
            smp = overrides.get(mp.id)
            permission = resolved.permission
            canonical_player_id = linked.get(mp.player_id) or mp.player_id
            if smp is not None:
                if smp.permission is not None:
                    permission = smp.permission
                if smp.shared_player is not None and smp.shared_player.linked_player_id:
                    canonical_player_id = smp.shared_player.linked_player_id

            rows.append(CanonicalMatchPlayer(
                base_match_player_id=mp.id,
                canonical_match_id=match.id,
                canonical_player_id=canonical_player_id,
                original_player_id=mp.player_id,
                owner_id=resolved.owner_id,
                shared_with_id=caller_id,
                source_type="shared",
                permission=permission,
                team_id=mp.team_id
            ))
        return rows

    @staticmethod
    def _shared_match_players(
        db: Session,
        shared_match: SharedMatch,
        match_players: List[MatchPlayer]
    ) -> Dict[int, SharedMatchPlayer]:
        if not match_players:
            return {}
        rows = db.query(SharedMatchPlayer).filter(
            SharedMatchPlayer.shared_match_id == shared_match.id,
            SharedMatchPlayer.match_player_id.in_([mp.id for mp in match_players])
        ).all()
        return {row.match_player_id: row for row in rows}

    @staticmethod
    def _linked_players(
        db: Session,
        caller_id: str,
        match_players: List[MatchPlayer]
    ) -> Dict[int, int]:
        if not match_players:
            return {}
        rows = db.query(SharedPlayer).filter(
            SharedPlayer.shared_with_id == caller_id,
            SharedPlayer.player_id.in_(sorted({mp.player_id for mp in match_players})),
            SharedPlayer.linked_player_id.isnot(None)
        ).all()
        return {row.player_id: row.linked_player_id for row in rows}

    @staticmethod
    def require_match_edit(resolved: ResolvedMatch, caller_id: str) -> None:
        """
        Match 層級的 edit 檢查（timer 等操作）

        異常：
            PermissionDenied: grant 只有 view
        """
        if resolved.permission != Permission.EDIT:
            logger.info(
                f"Caller {caller_id} has {resolved.permission.value} on match {resolved.match.id}, edit required"
            )
            raise PermissionDenied(
                f"Does not have permission to edit match {resolved.match.id}"
            )

    @staticmethod
    def require_edit(rows: List[CanonicalMatchPlayer], caller_id: str) -> None:
        """
        要求每一筆 CanonicalMatchPlayer 都是 edit

        隊伍操作在任何寫入開始前，一次檢查整個集合；
        只要有一人是 view，整筆操作就拒絕。

        異常：
            PermissionDenied: 任何一筆不是 edit
        """
        denied = [row.base_match_player_id for row in rows if row.permission != Permission.EDIT]
        if denied:
            logger.info(f"Caller {caller_id} lacks edit on match players {denied}")
            raise PermissionDenied(
                f"Does not have permission to edit match players {denied}"
            )
