from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from database import Base, SessionLocal, engine, settings
from api import events, players, rounds
from core.change_feed import RedisChangeFeed
from core.sql_store import SqlRoundStore
from core.state_machine import RoundStateMachine
from services.gift_service import seed_default_gifts

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def build_change_feed(settings) -> RedisChangeFeed:
    """跨行程的變更通知走 Redis pub/sub"""
    return RedisChangeFeed.from_url(settings.redis_url, channel_prefix=settings.redis_channel_prefix)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 建立資料庫表、預設禮物目錄、共享儲存
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        created = seed_default_gifts(db)
        db.commit()
        if created:
            logger.info(f"Seeded {created} gifts")
    finally:
        db.close()

    app.state.machine = RoundStateMachine.from_settings(settings)
    app.state.feed = build_change_feed(settings)
    await app.state.feed.start()
    app.state.store = SqlRoundStore(
        SessionLocal,
        feed=app.state.feed,
        machine=app.state.machine,
        timeout=settings.store_timeout_seconds
    )
    yield
    # Shutdown: 關閉仍在串流的訂閱與 Redis 連線
    await app.state.feed.close()


app = FastAPI(
    title="Wheel Game API",
    description="Backend API for the multiplayer winner-takes-all wheel lottery",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure this properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(rounds.router)
app.include_router(players.router)
app.include_router(events.router)


@app.get("/")
def root():
    return {"message": "Wheel Game API", "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
