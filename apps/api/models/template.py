"""Creative plaza template model."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func
import uuid

from database import Base


class Template(Base):
    """Reusable prompt template shown in the gallery."""

    __tablename__ = "templates"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    preview_image = Column(String, nullable=False)
    base_prompt = Column(Text, nullable=False)
    style_id = Column(String(50), nullable=True)
    requires_image = Column(Boolean, nullable=False, default=False)
    prompt_required = Column(Boolean, nullable=False, default=True)
    prompt_guide = Column(Text, nullable=True)
    prompt_placeholder = Column(Text, nullable=True)
    tags = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="draft", index=True)
    use_count = Column(Integer, nullable=False, default=0, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
