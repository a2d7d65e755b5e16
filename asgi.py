"""
asgi.py -- ASGI entry point for StepGate.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
