"""Report model: lifecycle record of one inspection analysis request."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Report(Base):
    """Vehicle inspection report. Status moves PENDING -> PROCESSING -> COMPLETED|FAILED."""

    __tablename__ = "reports"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    report_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="PENDING", index=True)
    cost = Column(Numeric(12, 2), nullable=False)
    input_refs = Column(JSON, nullable=False)
    input_hash = Column(String, nullable=False, index=True)
    vehicle_info = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    # Attempt number of the queue delivery that currently owns PROCESSING.
    processing_attempt = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="reports")
