from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from flowmind.application.api.route.thoughts import router as thoughts_router
from flowmind.application.websocket.connection_manager import ConnectionManager
from flowmind.application.websocket.ws_server import create_ws_router
from flowmind.domain.orchestration.core.system import FlowMindSystem
from flowmind.infrastructure.config.settings import AppConfig

logger = structlog.get_logger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    system: Optional[FlowMindSystem] = None,
    connection_manager: Optional[ConnectionManager] = None
) -> FastAPI:
    """Build the FastAPI application around a FlowMind system"""

    connection_manager = connection_manager or ConnectionManager()
    if system is None:
        system = FlowMindSystem.build(config or AppConfig.from_env(), sink=connection_manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await system.initialize()
        logger.info("FlowMind server started")
        yield
        await connection_manager.disconnect_all()
        await system.shutdown()
        logger.info("FlowMind server shutdown")

    app = FastAPI(title="FlowMind", lifespan=lifespan)
    app.state.system = system
    app.state.connection_manager = connection_manager

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(create_ws_router(system, connection_manager))
    app.include_router(thoughts_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "paused": system.paused,
            "active_connections": len(connection_manager.active_connections),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app
