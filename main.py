import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from agents.room_manager import room_manager
    from services.question_bank import get_question_bank
    from services.timers import timers

    logger.info("Quiz Party backend starting up...")
    # Load the question bank before the first room needs it
    get_question_bank()
    yield
    room_manager.shutdown()
    timers.shutdown()
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Quiz Party",
    version="0.1.0",
    description="Server-authoritative multiplayer trivia: category mini-games, timed questions and bonus rounds",
    lifespan=lifespan,
)

origins = list(settings.allowed_origins)
if settings.extra_origin:
    origins.append(settings.extra_origin)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "quiz-party", "version": "0.1.0"}


from routers.game_router import router as game_router
from routers.ws_router import router as ws_router

app.include_router(game_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
