"""Payment order and payment processing log models."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Payment(Base):
    """Credit top-up order created at checkout and settled by the gateway."""

    __tablename__ = "ai_images_creator_payments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_no = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    credits = Column(Integer, nullable=False)
    payment_type = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    trade_no = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    callback_data = Column(JSON, nullable=True)
    manual_processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="payments")


class PaymentLog(Base):
    """Trace of each attempt to process an order (webhook, manual fix, sync)."""

    __tablename__ = "ai_images_creator_payment_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_no = Column(String, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    process_type = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    credits = Column(Integer, nullable=False)
    status = Column(String, nullable=False)
    note = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
