"""ORM model for one scan pipeline execution."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, func

from vibetrace.models.base import Base


class Scan(Base):
    """
    One run of the pipeline against a repository, a URL, or both.

    Status and aggregates are written only by the scan pipeline; score and
    counters stay null/zero until status is 'complete'.
    """

    __tablename__ = "scans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    repository_id = Column(
        Integer,
        ForeignKey("repositories.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    target_url = Column(String(2048), nullable=True)
    status = Column(String(32), nullable=False, default="queued", index=True)
    critical_count = Column(Integer, nullable=False, default=0)
    high_count = Column(Integer, nullable=False, default=0)
    medium_count = Column(Integer, nullable=False, default=0)
    low_count = Column(Integer, nullable=False, default=0)
    total_findings = Column(Integer, nullable=False, default=0)
    score = Column(Integer, nullable=True)
    includes_dynamic = Column(Boolean, nullable=False, default=False)
    duration_seconds = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
