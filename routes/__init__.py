"""Routes package initializer."""

from .sync_routes import register_sync_routes

__all__ = [
    "register_sync_routes",
]
