"""Per-user credit balance. Written only by services.ledger."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UserCredits(Base):
    """Current balance plus lifetime purchased/used totals."""

    __tablename__ = "user_credits"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_user_credits_balance_non_negative"),)

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    total_purchased = Column(Numeric(12, 2), nullable=False, default=0)
    total_used = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="credits")
