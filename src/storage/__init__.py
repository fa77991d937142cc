"""
Storage layer for teams, projects, devices and subscriptions.

Uses SQLite for bootstrapping (free, embedded).
Migration path to PostgreSQL for production scale.
"""

from src.storage.database import PlatformDatabase, get_platform_db

__all__ = ["PlatformDatabase", "get_platform_db"]
