"""SQLAlchemy ORM models."""

from vibetrace.models.base import Base
from vibetrace.models.finding import Finding
from vibetrace.models.repository import Repository
from vibetrace.models.scan import Scan
from vibetrace.models.user import User

__all__ = ["Base", "Finding", "Repository", "Scan", "User"]
