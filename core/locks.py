"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

主要使用 PostgreSQL 的 SELECT ... FOR UPDATE 來實現悲觀鎖（Pessimistic Locking）
SQLite 會忽略 FOR UPDATE，只靠 transaction 本身的隔離
"""
from typing import List

from sqlalchemy.orm import Session, Query

from models import Match, MatchPlayer, RoundPlayer


def with_match_lock(match_id: int, db: Session) -> Query:
    """
    鎖定一個 Match（行級鎖）

    使用場景：
    - Timer 的 start / pause / reset
    - 結束對局（finish）
    - 兩個 pause 同時讀到同一個 start_time 會重複累加 duration，
      所以讀取 timer 欄位前一定要先拿到鎖

    範例：
        match = with_match_lock(match_id, db).first()
        if not match:
            raise MatchNotFound(match_id)
        match.running = False

    參數：
        match_id: Match id
        db: SQLAlchemy Session

    返回：
        Query object（需要呼叫 .first() 或 .one() 來取得結果）

    注意：
        - nowait=False 表示如果鎖被佔用，會等待
        - 必須在 transaction 內使用（確保有 commit 或 rollback）
    """
    return db.query(Match).filter(
        Match.id == match_id
    ).with_for_update(nowait=False)


def lock_match_players(match_id: int, db: Session) -> Query:
    """
    鎖定一場對局的所有 MatchPlayer

    使用場景：
    - 寫入最終分數、名次、勝者（全部玩家一次更新）

    返回：
        Query object（呼叫 .all() 取得所有結果）
    """
    return db.query(MatchPlayer).filter(
        MatchPlayer.match_id == match_id
    ).order_by(MatchPlayer.id).with_for_update(nowait=False)


def lock_round_players(round_id: int, match_player_ids: List[int], db: Session) -> Query:
    """
    鎖定同一回合內多個玩家的分數列（隊伍一次寫入）

    返回：
        Query object（呼叫 .all() 取得所有結果）
    """
    return db.query(RoundPlayer).filter(
        RoundPlayer.round_id == round_id,
        RoundPlayer.match_player_id.in_(match_player_ids)
    ).with_for_update(nowait=False)
