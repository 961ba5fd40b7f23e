"""Analysis job queue table (lease/redelivery via leased_until)."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String, Text

from database import Base


class AnalysisJob(Base):
    """Queue envelope for one in-flight report. Deleted on ack."""

    __tablename__ = "analysis_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    report_id = Column(String, nullable=False, unique=True, index=True)
    report_type = Column(String, nullable=False)
    lane = Column(String, nullable=False, index=True)
    priority = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="queued", index=True)
    attempt = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    enqueued_at = Column(DateTime(timezone=True), nullable=False)
    available_at = Column(DateTime(timezone=True), nullable=False, index=True)
    leased_by = Column(String, nullable=True)
    lease_token = Column(String, nullable=True)
    leased_until = Column(DateTime(timezone=True), nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
