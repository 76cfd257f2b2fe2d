"""ORM model for application users (owners of scans)."""

from sqlalchemy import Column, Integer, String

from vibetrace.models.base import Base


class User(Base):
    """
    Account that owns repositories and scans.

    completed_scan_count is recomputed from the scans table whenever a scan completes.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False, unique=True, index=True)
    completed_scan_count = Column(Integer, nullable=False, default=0, server_default="0")
