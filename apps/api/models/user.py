"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """User authenticated through the hosted auth service or Google OAuth."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    picture = Column(String, nullable=True)
    auth_provider = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_balance = relationship("CreditBalance", back_populates="user", uselist=False)
    tasks = relationship("ImageTask", back_populates="user", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="user")
    history_entries = relationship("GenerationHistory", back_populates="user", cascade="all, delete-orphan")
