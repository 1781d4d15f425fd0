"""REST API package."""

from .routes import router, init_api

__all__ = ["router", "init_api"]
