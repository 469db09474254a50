"""Per-user credit balance model."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Current credit balance; the credit log is the audit trail behind it."""

    __tablename__ = "ai_images_creator_credits"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    credits = Column(Integer, nullable=False, default=0)
    initial_grant = Column(Integer, nullable=False, default=0)
    last_order_no = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="credit_balance")
