from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from pydantic_settings import BaseSettings
from functools import lru_cache, wraps
import logging

from core.exceptions import WheelGameException

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./wheel_game.db"

    # 遊戲規則
    countdown_seconds: int = 60
    max_participants: int = 15
    settle_cooldown_seconds: float = 3.0
    # 鎖定後超過這個秒數仍未結算，視為持有抽獎的客戶端已離開
    settle_timeout_seconds: float = 30.0

    # 共享儲存與客戶端計時
    store_timeout_seconds: float = 5.0
    tick_interval_seconds: float = 1.0

    # 變更通知（Redis pub/sub）
    redis_url: str = "redis://localhost:6379/0"
    redis_channel_prefix: str = "wheel:changes"

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "WHEEL_"


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()


def build_engine(database_url: str):
    """
    依照資料庫 URL 建立 Engine

    SQLite 需要特殊設定：connect_args={"check_same_thread": False}
    SharedStore 會在 worker thread 執行 DB 操作（asyncio.to_thread），
    所以同一個連線池必須允許跨執行緒存取
    """
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
        pool_pre_ping=True
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：每個請求一個 Session

    玩家、禮物、庫存的 API 直接使用；回合的讀寫一律走 SqlRoundStore，
    由它自己在 worker thread 開關 session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def transactional(func):
    """
    Transaction decorator：一個共享儲存操作 = 一個 transaction

    用在 RoundManager 的寫入方法上：
        @staticmethod
        @transactional
        def join_round(db: Session, round_id: str, ...):
            round_obj = with_round_lock(round_id, db).first()
            ...  # 驗證、寫入參與者、記錄 JOIN

    結束時：
        - 正常返回 -> commit
        - 任何異常 -> rollback 後重新拋出
          （遊戲規則的拒絕只記 info，其餘記 error 並附上 traceback）

    注意：
        - 第一個參數必須是 db: Session（staticmethod 要放在最外層）
        - 函式內只 flush，不要自己 commit
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = args[0] if args and isinstance(args[0], Session) else kwargs.get('db')
        if db is None:
            raise ValueError(f"@transactional needs a Session as first argument ({func.__name__})")

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except WheelGameException as e:
            db.rollback()
            logger.info(f"{func.__name__} rejected: {e}")
            raise
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
