from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from database import Base, engine, get_settings
from api import rooms, players, rounds, websocket
from schemas import JoinLinkResponse
from services.naming_service import parse_join_code

import models  # noqa: F401  (register tables on Base.metadata)

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: 在應用啟動時建立資料庫表
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Market Panic Game API",
    description="Backend for a live simultaneous-move trading game (Buy / Hold / Sell)",
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
app.include_router(rooms.router)
app.include_router(players.router)
app.include_router(rounds.router)
app.include_router(websocket.router)


@app.get("/")
def root():
    return {"message": "Market Panic Game API", "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/join", response_model=JoinLinkResponse)
def resolve_join_link(request: Request):
    """加入連結：?join=CODE 解析出開啟連結的 session 要綁定的房間"""
    code = parse_join_code(str(request.url))
    if not code:
        raise HTTPException(status_code=400, detail="Missing room code")
    return JoinLinkResponse(room_id=code)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
