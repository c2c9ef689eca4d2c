from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache, wraps
import logging

from core.exceptions import BoardGameTrackerException, InternalError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """服務設定，可由環境變數或 .env 覆寫（DATABASE_URL、LOG_LEVEL、SQL_ECHO）"""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///./board_games.db"
    log_level: str = "INFO"
    sql_echo: bool = False


@lru_cache()
def get_settings():
    return Settings()


def _connect_args(database_url: str) -> dict:
    # SQLite 連線預設只能在建立它的 thread 使用，FastAPI 的 threadpool 需要關掉這個限制
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


settings = get_settings()

engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    pool_pre_ping=True,
    echo=settings.sql_echo
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """每個 request 一個 Session，request 結束後關閉"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _session_from_call(args, kwargs):
    if args and isinstance(args[0], Session):
        return args[0]
    return kwargs.get("db")


def transactional(func):
    """
    把一個 manager / service 操作包成單一 transaction

    對局的每個 mutation 都是「權限檢查 -> 讀取目前狀態 -> 寫入」，
    三個步驟必須在同一個 transaction 內，中間任何一步失敗就整筆 rollback。

    使用方式：
        @transactional
        def pause(db: Session, match_ref: MatchRef, caller_id: str):
            resolved = CanonicalResolver.resolve_match(db, caller_id, match_ref, lock=True)
            resolved.match.running = False
            # 成功時由 decorator commit

    行為：
        - 成功：commit，回傳原本的結果
        - 任何異常：rollback 後原封不動地重新拋出
          （隊伍的多筆分數寫入不會只套用一半）

    Log 等級：
        - 預期中的業務異常（NotFound / Unauthorized / InvalidState / 分數不合法）：INFO
        - InternalError 與其他未預期異常：ERROR（含 traceback）

    注意：
        - db: Session 必須是第一個位置參數，或以 db= 傳入
        - 被包住的函式內不要自己 commit
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = _session_from_call(args, kwargs)
        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument of {func.__name__}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except InternalError as e:
            db.rollback()
            logger.error(f"Invariant violated in {func.__name__}: {e}", exc_info=True)
            raise
        except BoardGameTrackerException as e:
            db.rollback()
            logger.info(f"{func.__name__} rejected, rolled back: {e}")
            raise
        except Exception as e:
            db.rollback()
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            raise

    return wrapper
