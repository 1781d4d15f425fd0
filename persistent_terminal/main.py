"""
Persistent Terminal Service - Main Application.

FastAPI application multiplexing long-lived dtach-backed shell sessions:
- WebSocket endpoint "/" for the client session protocol
- Read-only REST API under /api/v1
- Prometheus metrics under /metrics

Sessions outlive this process. On restart, session records are reloaded and
reconciled against the dtach sockets that are still present.

Author: Backend Lead Developer
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from . import __version__
from .config import TerminalConfig
from .core.auth import file_pin_provider
from .core.connection import ConnectionRegistry
from .core.dtach_bridge import DtachBridge, resolve_dtach_path
from .core.housekeeping import Housekeeper
from .core.pty_manager import PTYManager
from .core.session_manager import SessionManager
from .core.session_store import SessionStore
from .core.websocket_handler import WebSocketHandler
from .api import router, init_api

logger = logging.getLogger(__name__)


def _build_bridge(config: TerminalConfig) -> DtachBridge:
    """Resolve dtach and build the bridge. Raises ConfigurationError if dtach is missing."""
    return DtachBridge(
        dtach_path=resolve_dtach_path(config.dtach_path),
        sockets_dir=config.sockets_dir,
        shell=config.shell,
        pty_manager=PTYManager(default_cols=config.pty_cols, default_rows=config.pty_rows),
        kill_grace_delay=config.kill_grace_delay,
        subprocess_timeout=config.subprocess_timeout,
    )


def create_app(
    config: Optional[TerminalConfig] = None,
    bridge: Optional[DtachBridge] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Service configuration (defaults to the environment)
        bridge: Pre-built bridge; when omitted, dtach is resolved at startup
    """
    config = config or TerminalConfig()

    logging.basicConfig(
        level=config.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app_state = {'config': config}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup:
        - Resolve dtach (fatal if missing)
        - Create state directories
        - Load and reconcile session records
        - Start the session actor and housekeeping

        Shutdown:
        - Stop housekeeping
        - Detach PTYs and persist sessions (holders keep running)
        - Close client connections
        """
        logger.info("Starting Persistent Terminal Service...")

        session_bridge = bridge or _build_bridge(config)
        config.ensure_directories()

        registry = ConnectionRegistry()
        pin_provider = file_pin_provider(config.config_file)
        session_manager = SessionManager(
            bridge=session_bridge,
            store=SessionStore(config.sessions_dir),
            registry=registry,
            max_buffer_size=config.max_buffer_size,
        )

        restored = await session_manager.load()
        logger.info(f"Restored {restored} sessions from {config.sessions_dir}")
        await session_manager.start()

        housekeeper = Housekeeper(
            session_manager,
            registry,
            persist_interval=config.persist_interval,
            heartbeat_interval=config.heartbeat_interval,
        )
        housekeeper.start()

        app_state['bridge'] = session_bridge
        app_state['registry'] = registry
        app_state['session_manager'] = session_manager
        app_state['housekeeper'] = housekeeper
        app_state['ws_handler'] = WebSocketHandler(session_manager, registry, pin_provider)
        app.state.session_manager = session_manager
        app.state.registry = registry

        init_api(session_manager, pin_provider)

        if await pin_provider() is None:
            logger.warning("No PIN configured; clients are authenticated on connect")

        logger.info(f"Persistent Terminal Service started on {config.host}:{config.port}")

        yield

        logger.info("Shutting down Persistent Terminal Service...")

        await housekeeper.stop()
        await session_manager.shutdown()
        await registry.close_all()
        await session_manager.stop()

        logger.info("Persistent Terminal Service shut down")

    app = FastAPI(
        title="Persistent Terminal Service",
        description="Web terminal with dtach-backed sessions that survive server restarts",
        version=__version__,
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.mount("/metrics", make_asgi_app())

    @app.websocket("/")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for the client session protocol.

        See core.protocol for the message catalogue.
        """
        await app_state['ws_handler'].handle_connection(websocket)

    @app.get("/")
    async def root():
        """Root endpoint with service information."""
        stats = app_state['session_manager'].get_stats()

        return {
            "service": "Persistent Terminal Service",
            "version": __version__,
            "status": "running",
            "sessions": stats.get("total_sessions", 0),
            "running_sessions": stats.get("running", 0),
            "attached_ptys": app_state['bridge'].pty_manager.get_stats()["attached"],
            "endpoints": {
                "websocket": "/",
                "rest_api": "/api/v1",
                "health": "/api/v1/health",
                "metrics": "/metrics",
                "docs": "/docs"
            }
        }

    return app


app = create_app()
