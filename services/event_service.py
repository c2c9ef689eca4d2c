"""
對局事件紀錄服務

記錄生命週期轉換與分數修改（只新增，不修改）。
事件列加進呼叫者的 session，和它描述的 mutation 一起 commit 或 rollback。
"""
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models import MatchEvent


def record_event(
    db: Session,
    match_id: int,
    event_type: str,
    actor_id: str,
    data: Optional[Dict[str, Any]] = None
) -> MatchEvent:
    event = MatchEvent(
        match_id=match_id,
        event_type=event_type,
        actor_id=actor_id,
        data=data or {}
    )
    db.add(event)
    return event


def get_match_events(db: Session, match_id: int) -> List[MatchEvent]:
    """取得一場對局的所有事件（舊的在前）"""
    return (
        db.query(MatchEvent)
        .filter(MatchEvent.match_id == match_id)
        .order_by(MatchEvent.id)
        .all()
    )
