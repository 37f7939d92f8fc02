"""
asgi.py -- ASGI entry point for LedgerGuard.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --workers 4   (all workers share one signing secret via the database)
"""

from api.main import app

__all__ = ["app"]
