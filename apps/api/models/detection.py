"""Detection model: one usage record per billable tool run."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Detection(Base):
    """Append-only usage record for a signed-in user."""

    __tablename__ = "detections"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    source_type = Column(String, nullable=False)  # text, file, url
    input_type = Column(String, nullable=False)  # detect, plagiarism, humanize, summarize
    input_preview = Column(Text, nullable=True)
    raw_score = Column(Float, nullable=True)
    ai_score = Column(Float, nullable=True)
    length = Column(Integer, nullable=True)
    sentence_count = Column(Integer, nullable=True)
    sentences = Column(JSON, nullable=True)
    attack_detected = Column(JSON, nullable=True)
    readability_score = Column(Float, nullable=True)
    credits_used = Column(Integer, nullable=True)
    credits_remaining = Column(Integer, nullable=True)
    version = Column(String, nullable=True)
    language = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="detections")
