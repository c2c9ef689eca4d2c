"""
分享服務：建立與移除 Shared* 授權

重點：
1. 授權只是一筆 view / edit 權限，不複製任何 gameplay 資料；撤銷時只刪授權列
2. 同一個項目再分享給同一個人時，更新既有的授權（權限、本地對應），不會新增第二筆
3. 分享邀請可以打包：遊戲邀請底下可以掛 scoresheet、玩家、對局的子邀請，
   接受或拒絕父邀請時，同一個 transaction 內一併處理所有 pending 的子邀請
"""
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from models import (
    Game,
    Match,
    MatchPlayer,
    Permission,
    Player,
    Scoresheet,
    ShareItemType,
    ShareRequest,
    ShareRequestStatus,
    SharedGame,
    SharedMatch,
    SharedMatchPlayer,
    SharedPlayer,
    SharedScoresheet,
)
from core.exceptions import (
    MatchNotFound,
    ShareItemNotFound,
    ShareRequestAlreadyResolved,
    ShareRequestNotFound,
)
from database import transactional

logger = logging.getLogger(__name__)

_ITEM_MODELS = {
    ShareItemType.GAME: Game,
    ShareItemType.SCORESHEET: Scoresheet,
    ShareItemType.MATCH: Match,
    ShareItemType.PLAYER: Player,
}

# 子邀請的接受順序：玩家要先於對局，SharedMatchPlayer 才能連到 SharedPlayer
_ACCEPT_ORDER = {
    ShareItemType.GAME: 0,
    ShareItemType.SCORESHEET: 1,
    ShareItemType.PLAYER: 2,
    ShareItemType.MATCH: 3,
}


def _grant_match(
    db: Session,
    owner_id: str,
    match_id: int,
    shared_with_id: str,
    permission: Permission,
    player_permissions: Optional[Dict[int, Permission]] = None,
    shared_game_id: Optional[int] = None
) -> SharedMatch:
    match = db.query(Match).filter(Match.id == match_id, Match.created_by == owner_id).first()
    if not match:
        raise MatchNotFound(match_id)

    grant = db.query(SharedMatch).filter(
        SharedMatch.match_id == match_id,
        SharedMatch.shared_with_id == shared_with_id
    ).first()
    if grant:
        grant.permission = permission
        if shared_game_id is not None:
            grant.shared_game_id = shared_game_id
    else:
        grant = SharedMatch(
            owner_id=owner_id,
            shared_with_id=shared_with_id,
            match_id=match_id,
            shared_game_id=shared_game_id,
            permission=permission
        )
        db.add(grant)
        db.flush()

    player_permissions = player_permissions or {}
    existing = {
        smp.match_player_id: smp
        for smp in db.query(SharedMatchPlayer).filter(SharedMatchPlayer.shared_match_id == grant.id).all()
    }
    match_players = db.query(MatchPlayer).filter(MatchPlayer.match_id == match_id).all()
    shared_players = {
        sp.player_id: sp
        for sp in db.query(SharedPlayer).filter(
            SharedPlayer.shared_with_id == shared_with_id,
            SharedPlayer.player_id.in_(sorted({mp.player_id for mp in match_players}))
        ).all()
    } if match_players else {}

    for mp in match_players:
        smp = existing.get(mp.id)
        if smp is None:
            smp = SharedMatchPlayer(shared_match_id=grant.id, match_player_id=mp.id)
            db.add(smp)
        smp.permission = player_permissions.get(mp.id)
        shared_player = shared_players.get(mp.player_id)
        if shared_player is not None:
            smp.shared_player_id = shared_player.id

    logger.info(
        f"Match {match_id} shared by {owner_id} with {shared_with_id} ({permission.value})"
    )
    return grant


def _grant_game(
    db: Session,
    request: ShareRequest,
    linked_game_id: Optional[int] = None
) -> SharedGame:
    grant = db.query(SharedGame).filter(
        SharedGame.game_id == request.item_id,
        SharedGame.shared_with_id == request.shared_with_id
    ).first()
    if grant:
        grant.permission = request.permission
        if linked_game_id is not None:
            grant.linked_game_id = linked_game_id
    else:
        grant = SharedGame(
            owner_id=request.owner_id,
            shared_with_id=request.shared_with_id,
            game_id=request.item_id,
            linked_game_id=linked_game_id,
            permission=request.permission
        )
        db.add(grant)
    db.flush()
    return grant


def _grant_scoresheet(
    db: Session,
    request: ShareRequest,
    shared_game_id: Optional[int] = None
) -> SharedScoresheet:
    grant = db.query(SharedScoresheet).filter(
        SharedScoresheet.scoresheet_id == request.item_id,
        SharedScoresheet.shared_with_id == request.shared_with_id
    ).first()
    if grant:
        grant.permission = request.permission
        if shared_game_id is not None:
            grant.shared_game_id = shared_game_id
    else:
        grant = SharedScoresheet(
            owner_id=request.owner_id,
            shared_with_id=request.shared_with_id,
            scoresheet_id=request.item_id,
            shared_game_id=shared_game_id,
            permission=request.permission
        )
        db.add(grant)
    return grant


def _grant_player(db: Session, request: ShareRequest) -> SharedPlayer:
    # 既有授權的 linked_player_id 是接收者自己設定的本地對應，保留不動
    grant = db.query(SharedPlayer).filter(
        SharedPlayer.player_id == request.item_id,
        SharedPlayer.shared_with_id == request.shared_with_id
    ).first()
    if grant:
        grant.permission = request.permission
    else:
        grant = SharedPlayer(
            owner_id=request.owner_id,
            shared_with_id=request.shared_with_id,
            player_id=request.item_id,
            permission=request.permission
        )
        db.add(grant)
    return grant


@transactional
def grant_match_share(
    db: Session,
    owner_id: str,
    match_id: int,
    shared_with_id: str,
    permission: Permission = Permission.VIEW,
    player_permissions: Optional[Dict[int, Permission]] = None
) -> SharedMatch:
    """
    直接分享對局（已分享過則更新既有授權）

    參數：
        owner_id: 對局建立者
        match_id: 要分享的對局
        shared_with_id: 接收者 user id
        permission: 對局層級的權限
        player_permissions: {match_player_id: permission}，覆寫個別玩家的權限，
            沒列出的玩家沿用對局層級的權限

    返回：
        SharedMatch

    異常：
        MatchNotFound: 對局不存在或不屬於 owner_id
    """
    return _grant_match(db, owner_id, match_id, shared_with_id, permission, player_permissions)


@transactional
def revoke_match_share(db: Session, owner_id: str, match_id: int, shared_with_id: str) -> bool:
    """撤銷對局分享，沒有授權時回傳 False"""
    grant = db.query(SharedMatch).filter(
        SharedMatch.match_id == match_id,
        SharedMatch.owner_id == owner_id,
        SharedMatch.shared_with_id == shared_with_id
    ).first()
    if not grant:
        return False

    db.query(SharedMatchPlayer).filter(
        SharedMatchPlayer.shared_match_id == grant.id
    ).delete(synchronize_session=False)
    db.delete(grant)

    logger.info(f"Match {match_id} share with {shared_with_id} revoked by {owner_id}")
    return True


@transactional
def create_share_request(
    db: Session,
    owner_id: str,
    shared_with_id: str,
    item_type: ShareItemType,
    item_id: int,
    permission: Permission = Permission.VIEW,
    parent_id: Optional[int] = None
) -> ShareRequest:
    """
    建立一筆 pending 的分享邀請

    子邀請（parent_id）必須和父邀請是同一個分享者、同一個接收者，
    否則接受父邀請時會把項目授權給另一個人。

    異常：
        ShareItemNotFound: 項目不存在或不屬於 owner_id
        ShareRequestNotFound: 父邀請不存在，或分享者 / 接收者不一致
    """
    model = _ITEM_MODELS[item_type]
    item = db.query(model).filter(model.id == item_id, model.created_by == owner_id).first()
    if not item:
        raise ShareItemNotFound(item_type.value, item_id)

    if parent_id is not None:
        parent = db.query(ShareRequest).filter(
            ShareRequest.id == parent_id,
            ShareRequest.owner_id == owner_id,
            ShareRequest.shared_with_id == shared_with_id
        ).first()
        if not parent:
            raise ShareRequestNotFound(parent_id)

    request = ShareRequest(
        owner_id=owner_id,
        shared_with_id=shared_with_id,
        item_type=item_type,
        item_id=item_id,
        permission=permission,
        status=ShareRequestStatus.PENDING,
        parent_id=parent_id
    )
    db.add(request)
    db.flush()

    logger.info(
        f"Share request {request.id} created: {item_type.value} {item_id} "
        f"from {owner_id} to {shared_with_id}"
    )
    return request


def _get_pending_request(db: Session, request_id: int, caller_id: str) -> ShareRequest:
    request = db.query(ShareRequest).filter(
        ShareRequest.id == request_id,
        ShareRequest.shared_with_id == caller_id
    ).first()
    if not request:
        raise ShareRequestNotFound(request_id)
    if request.status != ShareRequestStatus.PENDING:
        raise ShareRequestAlreadyResolved(
            f"Share request {request_id} is already {request.status.value}"
        )
    return request


def _apply_request(
    db: Session,
    request: ShareRequest,
    linked_game_id: Optional[int] = None,
    shared_game_id: Optional[int] = None
) -> Optional[int]:
    """依一筆邀請建立（或更新）授權；遊戲邀請回傳 SharedGame id 給子邀請使用"""
    if request.item_type == ShareItemType.GAME:
        return _grant_game(db, request, linked_game_id=linked_game_id).id

    if request.item_type == ShareItemType.SCORESHEET:
        _grant_scoresheet(db, request, shared_game_id=shared_game_id)
    elif request.item_type == ShareItemType.PLAYER:
        _grant_player(db, request)
    else:
        _grant_match(
            db,
            request.owner_id,
            request.item_id,
            request.shared_with_id,
            request.permission,
            shared_game_id=shared_game_id
        )
    db.flush()
    return None


@transactional
def accept_share_request(
    db: Session,
    request_id: int,
    caller_id: str,
    linked_game_id: Optional[int] = None
) -> ShareRequest:
    """
    接受寄給呼叫者的分享邀請

    流程：
    1. 取得 pending 的邀請（必須是寄給呼叫者的）
    2. 有 linked_game_id 時，確認是呼叫者自己的遊戲
    3. 建立（或更新）授權
    4. 依 遊戲 -> scoresheet -> 玩家 -> 對局 的順序接受所有 pending 子邀請

    異常：
        ShareRequestNotFound: 邀請不存在或不是寄給呼叫者
        ShareRequestAlreadyResolved: 邀請已被接受或拒絕
        ShareItemNotFound: linked_game_id 不是呼叫者的遊戲
    """
    request = _get_pending_request(db, request_id, caller_id)

    if linked_game_id is not None:
        own_game = db.query(Game).filter(Game.id == linked_game_id, Game.created_by == caller_id).first()
        if not own_game:
            raise ShareItemNotFound(ShareItemType.GAME.value, linked_game_id)

    shared_game_id = _apply_request(db, request, linked_game_id=linked_game_id)
    request.status = ShareRequestStatus.ACCEPTED

    children = sorted(
        (child for child in request.children if child.status == ShareRequestStatus.PENDING),
        key=lambda child: _ACCEPT_ORDER[child.item_type]
    )
    for child in children:
        _apply_request(db, child, shared_game_id=shared_game_id)
        child.status = ShareRequestStatus.ACCEPTED

    logger.info(
        f"Share request {request_id} accepted by {caller_id} with {len(children)} child requests"
    )
    return request


@transactional
def reject_share_request(db: Session, request_id: int, caller_id: str) -> ShareRequest:
    """拒絕分享邀請，連同所有 pending 的子邀請"""
    request = _get_pending_request(db, request_id, caller_id)
    request.status = ShareRequestStatus.REJECTED
    for child in request.children:
        if child.status == ShareRequestStatus.PENDING:
            child.status = ShareRequestStatus.REJECTED

    logger.info(f"Share request {request_id} rejected by {caller_id}")
    return request
