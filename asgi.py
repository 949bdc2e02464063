"""
asgi.py -- Application assembly for the CRM identity service.

This is the module ASGI servers load. api/main.py owns the app and its
routers; keeping the server entry point separate lets the CLI import
api.main for build_services() without anything binding a socket.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
