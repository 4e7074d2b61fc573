"""REST API for the workflow engine."""

from .endpoints import router

__all__ = ["router"]
