"""ORM model for source repositories connected by a user."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from vibetrace.models.base import Base


class Repository(Base):
    """A hosted repository (owner/name) that can be checked out and scanned."""

    __tablename__ = "repositories"
    __table_args__ = (UniqueConstraint("user_id", "full_name", name="uq_repositories_user_full_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    full_name = Column(String(512), nullable=False)
    last_scanned_at = Column(DateTime(timezone=True), nullable=True)
