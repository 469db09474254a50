"""Append-only credit log model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditLog(Base):
    """Immutable record of one balance mutation (old + change == new)."""

    __tablename__ = "ai_images_creator_credit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    order_no = Column(String, nullable=True, index=True)
    operation_type = Column(String, nullable=False, index=True)
    old_value = Column(Integer, nullable=False)
    change_value = Column(Integer, nullable=False)
    new_value = Column(Integer, nullable=False)
    note = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
