"""
REST API - Read-only Session Endpoints.

All session mutations go through the WebSocket protocol (behind the PIN
gate). The HTTP surface only exposes health and an unauthenticated-safe view
of the session table when no PIN is configured.

Endpoints:
- GET /api/v1/health - Liveness and session counts
- GET /api/v1/sessions - Session summaries (403 when a PIN is configured)

Author: Backend Lead Developer
"""

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel
from typing import Optional, List
import time
import logging

from ..core.auth import PinProvider
from ..core.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["sessions"])


# Response Models

class SessionSummary(BaseModel):
    """Session summary, identical to the WebSocket ``sessions`` entries."""
    id: str
    name: str
    status: str
    createdAt: int


# Global dependencies (injected at startup)
_session_manager: Optional[SessionManager] = None
_pin_provider: Optional[PinProvider] = None


def init_api(session_manager: SessionManager, pin_provider: PinProvider):
    """Initialize API with dependencies."""
    global _session_manager, _pin_provider
    _session_manager = session_manager
    _pin_provider = pin_provider


@router.get("/sessions", response_model=List[SessionSummary])
async def list_sessions():
    """
    List sessions ordered by creation time.

    Refused when a PIN is configured, since HTTP requests bypass the PIN gate.
    """
    if _pin_provider is not None and await _pin_provider() is not None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="PIN authentication required; use the WebSocket protocol",
        )

    try:
        return await _session_manager.list_sessions()
    except Exception as e:
        logger.error(f"Failed to list sessions: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list sessions: {str(e)}"
        )


@router.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    try:
        stats = _session_manager.get_stats()
        return {
            "status": "healthy" if _session_manager.is_running else "unhealthy",
            "sessions": stats.get("total_sessions", 0),
            "running": stats.get("running", 0),
            "detached": stats.get("detached", 0),
            "terminated": stats.get("terminated", 0),
            "timestamp": time.time()
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "timestamp": time.time()
        }
