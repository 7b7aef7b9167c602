"""
asgi.py -- ASGI entry point for Hanashi.

The API app is the whole HTTP surface; page rendering lives in the frontend
and talks to it over /api/v1.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
