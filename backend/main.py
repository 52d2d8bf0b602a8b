import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from agents.sweeper import run_sweeper
    from routers.ws_router import manager

    logger.info(f"Witbox backend starting up (store: {settings.store_backend})...")
    stop_event = asyncio.Event()
    sweep_task = None
    if settings.sweep_enabled:
        sweep_task = asyncio.create_task(
            run_sweeper(stop_event, on_advanced=manager.broadcast_outcome)
        )
    yield
    stop_event.set()
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Witbox",
    version="0.1.0",
    description="Real-time party game backend — prompts, responses, votes and rounds",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "witbox", "version": "0.1.0"}


from routers.game_router import router as game_router
from routers.ws_router import router as ws_router

app.include_router(game_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
