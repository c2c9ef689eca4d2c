from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from database import Base, engine, settings
from api import matches

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 啟動時建立缺少的資料表（不做 migration）
    Base.metadata.create_all(bind=engine)
    logger.info(f"Board Game Tracker API started (database={engine.url.render_as_string(hide_password=True)})")
    yield


app = FastAPI(
    title="Board Game Tracker API",
    description="Match timer, scoring and sharing for board game play tracking",
    version="1.0.0",
    lifespan=lifespan
)

# 呼叫者身分由前面的 gateway 驗證，這裡只開放 CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(matches.router)


@app.get("/")
def root():
    return {"service": "board-game-tracker", "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
