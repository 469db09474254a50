"""Image generation task model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class ImageTask(Base):
    """One image-generation request tracked from submission to a terminal state."""

    __tablename__ = "image_tasks"

    task_id = Column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    prompt = Column(Text, nullable=False)
    style = Column(String, nullable=True)
    aspect_ratio = Column(String, nullable=True)
    model = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    image_url = Column(Text, nullable=True)
    error_message = Column(String, nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    stage = Column(String, nullable=True)
    lock_version = Column(Integer, nullable=False, default=0)
    credits_deducted = Column(Boolean, nullable=False, default=False)
    credits_refunded = Column(Boolean, nullable=False, default=False)
    queue_job_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="tasks")
