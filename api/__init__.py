"""
HTTP surface for the alert dispatcher.

This package provides a single FastAPI application that exposes:
- The dispatch trigger used by the scheduler
- Operator endpoints for the run log and dead letters
"""

from api.main import app

__all__ = ["app"]
