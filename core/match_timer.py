"""
Match Timer：管理對局計時的狀態機

狀態（全部由 Match 的欄位推導，不存在記憶體裡）：
- IDLE：從未開始（running=False, start_time=None, duration=0）
- RUNNING：計時中（running=True, start_time 有值）
- PAUSED：暫停（running=False, start_time=None, duration>0）
- FINISHED：終止狀態（finished=True），由 MatchManager.finish_match 產生

轉換：
- start：IDLE / PAUSED -> RUNNING
- pause：RUNNING -> PAUSED（duration += now - start_time）
- reset_duration：任何非 FINISHED 狀態 -> IDLE

並發：
- 每個轉換都在單一 transaction 內鎖住 Match，權限檢查、讀取、寫入一致
- 多台裝置同時切換 timer 時以最後寫入者為準
"""
import enum
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from models import Match, utcnow
from schemas import MatchRef
from core.canonical_resolver import CanonicalResolver
from core.exceptions import (
    InvalidStateTransition,
    InvariantViolation,
    MatchAlreadyFinished,
)
from services.event_service import record_event
from database import transactional

logger = logging.getLogger(__name__)


class TimerState(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    FINISHED = "FINISHED"


def get_timer_state(match: Match) -> TimerState:
    """依 Match 欄位推導目前的 timer 狀態"""
    if match.finished:
        return TimerState.FINISHED
    if match.running:
        return TimerState.RUNNING
    if match.duration:
        return TimerState.PAUSED
    return TimerState.IDLE


def elapsed_seconds(start_time: datetime, now: datetime) -> int:
    """兩個時間點相差的整秒數（無條件捨去，不會是負數）"""
    if start_time.tzinfo is not None:
        start_time = start_time.replace(tzinfo=None)
    if now.tzinfo is not None:
        now = now.replace(tzinfo=None)
    return max(0, int((now - start_time).total_seconds()))


class MatchTimer:
    """對局計時器"""

    @staticmethod
    @transactional
    def start(
        db: Session,
        match_ref: MatchRef,
        caller_id: str,
        now: Optional[datetime] = None
    ) -> Match:
        """
        開始計時（IDLE / PAUSED -> RUNNING）

        前置條件：
        1. 呼叫者對 Match 有 edit 權限
        2. Match 尚未結束
        3. Match 目前不是計時中

        參數：
            db: SQLAlchemy Session
            match_ref: {type: original|shared, id}
            caller_id: 呼叫者 user id
            now: 目前時間（測試時注入）

        返回：
            更新後的 Match

        異常：
            MatchNotFound: Match 或 grant 不存在
            PermissionDenied: 只有 view 權限
            MatchAlreadyFinished: Match 已結束
            InvalidStateTransition: Match 已經在計時
        """
        now = now or utcnow()

        # 1. 解析並鎖定 Match
        resolved = CanonicalResolver.resolve_match(db, caller_id, match_ref, lock=True)
        CanonicalResolver.require_match_edit(resolved, caller_id)
        match = resolved.match

        # 2. 驗證狀態
        state = get_timer_state(match)
        if state == TimerState.FINISHED:
            raise MatchAlreadyFinished(match.id)
        if state == TimerState.RUNNING:
            raise InvalidStateTransition(f"Match {match.id} is already running")

        # 3. 狀態轉換
        match.running = True
        match.start_time = now

        record_event(db, match.id, "TIMER_STARTED", caller_id, {"duration": match.duration})
        logger.info(f"Timer started for match {match.id} by {caller_id} (from {state.value})")

        return match

    @staticmethod
    @transactional
    def pause(
        db: Session,
        match_ref: MatchRef,
        caller_id: str,
        now: Optional[datetime] = None
    ) -> Match:
        """
        暫停計時（RUNNING -> PAUSED）

        流程：
        1. 解析並鎖定 Match，要求 edit
        2. 要求 running=True 且 start_time 有值
        3. duration += now - start_time，清掉 start_time，記錄 end_time

        異常：
            MatchNotFound: Match 或 grant 不存在
            PermissionDenied: 只有 view 權限
            MatchAlreadyFinished: Match 已結束
            InvariantViolation: 沒在計時、或計時中卻沒有 start_time
                （資料不一致，不可以默默自己修好）
        """
        now = now or utcnow()

        # 1. 解析並鎖定 Match
        resolved = CanonicalResolver.resolve_match(db, caller_id, match_ref, lock=True)
        CanonicalResolver.require_match_edit(resolved, caller_id)
        match = resolved.match

        if match.finished:
            raise MatchAlreadyFinished(match.id)

        # 2. 驗證不變量
        if not match.running or match.start_time is None:
            raise InvariantViolation(
                f"Cannot pause match {match.id}: running={match.running}, start_time={match.start_time}"
            )

        # 3. 累加時間
        elapsed = elapsed_seconds(match.start_time, now)
        match.duration = (match.duration or 0) + elapsed
        match.running = False
        match.start_time = None
        match.end_time = now

        record_event(db, match.id, "TIMER_PAUSED", caller_id, {
            "elapsed": elapsed,
            "duration": match.duration
        })
        logger.info(f"Timer paused for match {match.id}: +{elapsed}s, total {match.duration}s")

        return match

    @staticmethod
    @transactional
    def reset_duration(
        db: Session,
        match_ref: MatchRef,
        caller_id: str
    ) -> Match:
        """
        重設計時（任何非 FINISHED 狀態 -> IDLE）

        異常：
            MatchNotFound: Match 或 grant 不存在
            PermissionDenied: 只有 view 權限
            MatchAlreadyFinished: Match 已結束
        """
        resolved = CanonicalResolver.resolve_match(db, caller_id, match_ref, lock=True)
        CanonicalResolver.require_match_edit(resolved, caller_id)
        match = resolved.match

        if match.finished:
            raise MatchAlreadyFinished(match.id)

        previous = match.duration
        match.duration = 0
        match.running = False
        match.start_time = None

        record_event(db, match.id, "TIMER_RESET", caller_id, {"previous_duration": previous})
        logger.info(f"Timer reset for match {match.id} (was {previous}s)")

        return match
