"""
asgi.py -- ASGI entry point for Sprue.

Run with:  uvicorn asgi:app --reload

api/main.py owns the application object; this module only re-exports it so
the server command stays stable if the app grows more layers.
"""

from api.main import app

__all__ = ["app"]
