"""
Match API Endpoints

重點：
1. 呼叫者身分由上層驗證後放在 X-User-Id header（本服務不處理登入）
2. ref_type 決定定址方式：original（自己的對局）或 shared（別人分享的對局）
3. 所有業務邏輯集中在 CanonicalResolver / MatchTimer / MatchManager
4. 業務異常依分類轉成 HTTP status，InternalError 一律回傳 500
"""
from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

import logging

from database import get_db
from schemas import (
    CanonicalMatchPlayer,
    FinishMatchResponse,
    ManualWinnersSubmit,
    MatchRef,
    PlacementsSubmit,
    PlayerScoreUpdate,
    RoundScoreUpdate,
    StatusResponse,
)
from core.canonical_resolver import CanonicalResolver
from core.match_manager import MatchManager
from core.match_timer import MatchTimer
from core.exceptions import (
    BoardGameTrackerException,
    InvalidScoreValue,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)

router = APIRouter(prefix="/api/matches", tags=["matches"])
logger = logging.getLogger(__name__)


def _match_ref(ref_type: str, match_id: int) -> MatchRef:
    if ref_type not in ("original", "shared"):
        raise HTTPException(status_code=404, detail="Match not found")
    return MatchRef(type=ref_type, id=match_id)


def _http_error(e: BoardGameTrackerException) -> HTTPException:
    """業務異常 -> HTTPException"""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UnauthorizedError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, InvalidStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidScoreValue):
        return HTTPException(status_code=422, detail=str(e))
    logger.error(f"Internal failure: {e}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal error")


@router.get("/{ref_type}/{match_id}/players", response_model=List[CanonicalMatchPlayer])
def get_match_players(
    ref_type: str,
    match_id: int,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    """
    取得呼叫者視角的對局玩家（含每個玩家的 view / edit 權限）
    """
    match_ref = _match_ref(ref_type, match_id)
    try:
        return CanonicalResolver.resolve_match_players(db, x_user_id, match_ref)

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to resolve match players: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{ref_type}/{match_id}/timer/start", response_model=StatusResponse)
def start_timer(
    ref_type: str,
    match_id: int,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    """
    開始計時（Idle / Paused -> Running）
    """
    match_ref = _match_ref(ref_type, match_id)
    try:
        MatchTimer.start(db, match_ref, x_user_id)
        return StatusResponse(status="ok")

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to start timer: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{ref_type}/{match_id}/timer/pause", response_model=StatusResponse)
def pause_timer(
    ref_type: str,
    match_id: int,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    """
    暫停計時（Running -> Paused）

    沒在計時時暫停代表資料不一致，回傳 500 而不是假裝成功
    """
    match_ref = _match_ref(ref_type, match_id)
    try:
        MatchTimer.pause(db, match_ref, x_user_id)
        return StatusResponse(status="ok")

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to pause timer: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{ref_type}/{match_id}/timer/reset", response_model=StatusResponse)
def reset_timer(
    ref_type: str,
    match_id: int,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    match_ref = _match_ref(ref_type, match_id)
    try:
        MatchTimer.reset_duration(db, match_ref, x_user_id)
        return StatusResponse(status="ok")

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to reset timer: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.put("/{ref_type}/{match_id}/round-score", response_model=StatusResponse)
def update_round_score(
    ref_type: str,
    match_id: int,
    data: RoundScoreUpdate,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    """
    修改回合分數

    target.type = player：單一玩家
    target.type = team：整個隊伍（每個成員都需要 edit 權限，否則整筆拒絕）
    """
    match_ref = _match_ref(ref_type, match_id)
    try:
        MatchManager.update_round_score(
            db, match_ref, data.target, data.round_id, data.score, x_user_id
        )
        return StatusResponse(status="ok")

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to update round score: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.put("/{ref_type}/{match_id}/player-score", response_model=StatusResponse)
def update_player_score(
    ref_type: str,
    match_id: int,
    data: PlayerScoreUpdate,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    match_ref = _match_ref(ref_type, match_id)
    try:
        MatchManager.update_player_score(db, match_ref, data.target, data.score, x_user_id)
        return StatusResponse(status="ok")

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to update player score: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{ref_type}/{match_id}/winners", response_model=StatusResponse)
def submit_manual_winners(
    ref_type: str,
    match_id: int,
    data: ManualWinnersSubmit,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    """
    手動指定勝者（只適用 Manual 勝利條件）
    """
    match_ref = _match_ref(ref_type, match_id)
    try:
        MatchManager.submit_manual_winners(db, match_ref, data.winner_ids, x_user_id)
        return StatusResponse(status="ok")

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to submit manual winners: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{ref_type}/{match_id}/finish", response_model=FinishMatchResponse)
def finish_match(
    ref_type: str,
    match_id: int,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    """
    結束對局

    返回：
        - final_scores: {match_player_id: score}
        - winners: 勝者 match_player_id 列表
        - placements: {match_player_id: placement}
    """
    match_ref = _match_ref(ref_type, match_id)
    try:
        result = MatchManager.finish_match(db, match_ref, x_user_id)
        return FinishMatchResponse(
            final_scores=result.final_scores,
            winners=sorted(result.winners),
            placements=result.placements
        )

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to finish match: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{ref_type}/{match_id}/placements", response_model=FinishMatchResponse)
def submit_placements(
    ref_type: str,
    match_id: int,
    data: PlacementsSubmit,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db)
):
    """
    手動指定名次並結束對局（平手時的 tie-breaker）

    名次 1 的玩家為勝者；placement 為 null 的玩家不更新
    """
    match_ref = _match_ref(ref_type, match_id)
    try:
        result = MatchManager.submit_placements(
            db,
            match_ref,
            {p.match_player_id: p.placement for p in data.placements},
            x_user_id
        )
        return FinishMatchResponse(
            final_scores=result.final_scores,
            winners=sorted(result.winners),
            placements=result.placements
        )

    except BoardGameTrackerException as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to submit placements: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
