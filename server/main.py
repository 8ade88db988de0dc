"""
FastAPI Main Application
========================

Main entry point for the auto-mode server.
Provides the REST API and the WebSocket event stream.
"""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Callable

# git subprocesses need the proactor loop on Windows
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from dotenv import load_dotenv

# AUTOMODE_* and API keys may come from a local .env
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from automode.config import AutoModeConfig
from automode.orchestrator import AutoModeOrchestrator

from .exceptions import register_exception_handlers
from .routers import auto_mode_router

_logger = logging.getLogger(__name__)


def create_app(orchestrator_factory: Callable[[], AutoModeOrchestrator] | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        orchestrator_factory: Builds the orchestrator at startup. Defaults to
            one configured from the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if orchestrator_factory is not None:
            orchestrator = orchestrator_factory()
        else:
            orchestrator = AutoModeOrchestrator(config=AutoModeConfig.from_env())
        app.state.orchestrator = orchestrator
        _logger.info("Auto mode orchestrator ready (max concurrency %d)", orchestrator.config.max_concurrency)

        yield

        # Stop admitting work first, then wait for running features to wind down
        await orchestrator.shutdown()

    app = FastAPI(
        title="Auto Mode Orchestrator",
        description="Autonomous feature execution with plan approval and live events",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Errors share one JSON body, see server.exceptions
    register_exception_handlers(app)

    # Set when the server is reachable from other hosts
    allow_remote = os.environ.get("AUTOMODE_ALLOW_REMOTE", "").lower() in ("1", "true", "yes")
    if allow_remote:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[
                "http://localhost:5173",      # Vite dev server
                "http://127.0.0.1:5173",
                "http://localhost:8888",      # Production
                "http://127.0.0.1:8888",
            ],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(auto_mode_router)

    @app.get("/api/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("AUTOMODE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "server.main:app",
        host="127.0.0.1",  # Localhost only for security
        port=int(os.environ.get("AUTOMODE_PORT", "8888")),
        reload=False,
    )


if __name__ == "__main__":
    run()
