"""
asgi.py -- Application assembly for App Budget.

The single import target for ASGI servers. The frontend is built and served
separately; this process only exposes /api and /uploads.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
