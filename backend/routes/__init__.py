"""
Legacy Sync Service - Routes Package

API routers for the legacy sync service.
"""

from .legacy_sync import router as legacy_sync_router, set_db as set_legacy_sync_db

__all__ = [
    'legacy_sync_router', 'set_legacy_sync_db',
]
