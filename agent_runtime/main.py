"""
Agent Runtime - Main Entry Point

Streaming run gateway and delegation controller over an Agent Run
Service.

Usage:
    python -m agent_runtime.main

Environment Variables:
    RUNTIME_HOST        - Server host (default: 0.0.0.0)
    RUNTIME_PORT        - Server port (default: 8000)
    RUN_SERVICE_URL     - Agent Run Service URL (default: http://localhost:8123)
    RUN_SERVICE_API_KEY - API key sent as x-api-key
    MODEL_URL           - Decision model (Ollama) URL (default: http://localhost:11434)
    MANAGER_MODEL       - Decision model name
    STORE_BACKEND       - memory or supabase (default: memory)
    SESSION_TTL         - Suspended session TTL in seconds (default: 1800)
    LOG_LEVEL           - Logging level (default: INFO)
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router as api_router
from .config import config
from .model_client import model_client
from .run_client import run_service
from .state import interrupts
from .store import store

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""

    # Startup
    logger.info("=" * 60)
    logger.info("Agent Runtime Starting")
    logger.info("=" * 60)

    await interrupts.start()

    logger.info(f"Run service URL: {config.run_service_url}")
    logger.info(f"Decision model: {config.manager_model} at {config.model_url}")
    logger.info(f"Store backend: {config.store_backend}")
    logger.info(f"Session TTL: {config.session_ttl}s")

    logger.info("-" * 60)
    logger.info(f"Server ready at http://{config.host}:{config.port}")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await interrupts.stop()
    await run_service.close()
    await model_client.close()
    close_store = getattr(store, "close", None)
    if close_store is not None:
        await close_store()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Agent Runtime",
    description=(
        "Streams agent runs with human tool approval, "
        "delegates goals across sub-agents and reports run analytics."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "suspended_sessions": interrupts.session_count,
        "run_service_url": config.run_service_url,
        "model": config.manager_model,
        "store": config.store_backend,
    }


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "name": "Agent Runtime",
        "version": "0.1.0",
        "endpoints": {
            "chat": "/agents/{agent_id}/chat",
            "resume": "/agents/{agent_id}/threads/{thread_id}/resume",
            "execute": "/tasks/{task_id}/execute",
            "orchestrate": "/orchestrate",
            "analytics": "/task-runs/{task_run_id}/analytics",
            "models": "/models",
            "health": "/health",
        },
    }


def main():
    """Run the runtime server."""
    uvicorn.run(
        "agent_runtime.main:app",
        host=config.host,
        port=config.port,
        reload=False,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
