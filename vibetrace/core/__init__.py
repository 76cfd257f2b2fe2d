"""Core app configuration and database."""

from vibetrace.core.config import get_settings, settings
from vibetrace.core.database import get_db

__all__ = ["get_settings", "settings", "get_db"]
