"""
Main FastAPI application

The lifespan builds the MeetingOrchestrator (rate limiters, model gateway,
persona queue, turn engine, lifecycle driver) and tears it down on shutdown.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from a2mp.config import get_settings
from a2mp.database import engine, Base
from a2mp import models  # noqa: F401 - registers tables on Base.metadata
from a2mp.agents.orchestrator import MeetingOrchestrator
from a2mp.api import meetings, participants, system
from a2mp.utils.logger import get_logger

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    orchestrator = MeetingOrchestrator(settings)
    app.state.orchestrator = orchestrator
    orchestrator.start()
    logger.info(f"{settings.APP_NAME} started (engine enabled: {settings.ENGINE_ENABLED})")

    yield

    await orchestrator.aclose()
    await engine.dispose()
    logger.info("Shutdown complete")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(meetings.router, prefix="/api/meetings", tags=["Meetings"])
app.include_router(participants.router, prefix="/api/participant", tags=["Participants"])
app.include_router(system.router, prefix="/api/system", tags=["System"])


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "a2mp.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
