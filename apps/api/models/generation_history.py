"""Generated image history model."""

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class GenerationHistory(Base):
    """A completed generation kept in the user's gallery."""

    __tablename__ = "ai_images_creator_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    task_id = Column(String, nullable=True, index=True)
    image_url = Column(Text, nullable=False)
    prompt = Column(Text, nullable=True)
    style = Column(String, nullable=True)
    aspect_ratio = Column(String, nullable=True)
    model_used = Column(String, nullable=True)
    status = Column(String, nullable=False, default="completed")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="history_entries")
