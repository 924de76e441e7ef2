"""FastAPI application entry point for the subtitle uploader."""

import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from uploader.api import manager as ws_manager
from uploader.api import router as api_router
from uploader.config import settings
from uploader.core.logging import setup_logging
from uploader.database import init_db
from uploader.services.event_broadcaster import EventBroadcaster
from uploader.services.pipeline import PipelineContext, PipelineOrchestrator


def build_pipeline() -> PipelineOrchestrator:
    """Construct the pipeline context and orchestrator from settings."""
    context = PipelineContext(broadcaster=EventBroadcaster(ws_manager), config=settings)
    return PipelineOrchestrator(context)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    setup_logging()
    logger.info("Starting subtitle uploader...")

    await init_db()
    logger.info("Cache database initialized")

    if not settings.api_key:
        logger.warning("No OpenSubtitles API key configured; remote stages will fail")
    if not settings.session_token:
        logger.warning("No session token configured; uploads are disabled")

    app.state.pipeline = build_pipeline()
    logger.info("Pipeline ready")

    yield

    # Shutdown
    logger.info("Shutting down subtitle uploader...")
    await app.state.pipeline.ctx.aclose()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Subtitle Uploader API",
    description="Identify local videos and subtitles and upload subtitles to OpenSubtitles",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],  # Vite dev server
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time updates."""
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep connection alive, handle any incoming messages
            data = await websocket.receive_text()
            logger.debug(f"Received WebSocket message: {data}")
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await ws_manager.disconnect(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    """Root endpoint - API status."""
    return {
        "name": "Subtitle Uploader",
        "version": "0.1.0",
        "status": "running",
    }


def run() -> None:
    import uvicorn

    try:
        uvicorn.run(app, host=settings.host, port=settings.port, reload=False)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
