"""SessionGraph FastAPI service: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessiongraph import config
from sessiongraph.routers.session import session_router
from sessiongraph.session import SessionMonitor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("sessiongraph")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("SessionGraph starting up")
    app.state.session_monitor = SessionMonitor()

    yield

    logger.info("SessionGraph shutting down")
    await app.state.session_monitor.stop()


app = FastAPI(
    title="SessionGraph API",
    description="Live conversation graph for assistant session transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(session_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    monitor = getattr(app.state, "session_monitor", None)
    return {
        "status": "ok",
        "watcher": "running" if monitor is not None and monitor.is_watching else "stopped",
        "filePath": str(monitor.path) if monitor is not None and monitor.path else None,
    }


def run() -> None:
    import uvicorn

    uvicorn.run("sessiongraph.main:app", host=config.HOST, port=config.PORT, reload=config.RELOAD)


if __name__ == "__main__":
    run()
