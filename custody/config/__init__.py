"""Configuration package for application settings and database connections."""

from custody.config.settings import settings, Settings, get_settings
from custody.config.database import (
    connect_to_mongodb,
    close_mongodb_connection,
    get_database,
    get_db,
)

__all__ = [
    "settings",
    "Settings",
    "get_settings",
    "connect_to_mongodb",
    "close_mongodb_connection",
    "get_database",
    "get_db",
]
