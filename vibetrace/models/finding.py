"""ORM model for persisted scan findings."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func

from vibetrace.models.base import Base, JSONType


class Finding(Base):
    """
    Persisted finding aligned with NormalizedFinding, plus narrative and triage fields.

    file_path is a repository-relative path for static findings and a URL for
    dynamic/SEO findings; it never carries the checkout directory.
    """

    __tablename__ = "findings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(Integer, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    severity = Column(String(32), nullable=False, index=True)
    category = Column(String(64), nullable=False, index=True)
    rule_id = Column(String(512), nullable=False)
    file_path = Column(String(2048), nullable=False, default="")
    line_number = Column(Integer, nullable=True)
    code_snippet = Column(Text, nullable=False, default="")
    raw_output = Column(JSONType, nullable=True)
    plain_english = Column(Text, nullable=False)
    business_impact = Column(Text, nullable=False)
    fix_prompt = Column(Text, nullable=False)
    verification_step = Column(Text, nullable=False)
    narrative_source = Column(String(16), nullable=False, default="fallback")
    status = Column(String(32), nullable=False, default="open")
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
