"""API module for HTTP routes.

This module exposes the FastAPI router for the threadrunner control surface.
"""

from threadrunner.api.routes import router

__all__ = ["router"]
