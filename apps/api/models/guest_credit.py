"""GuestCredit model for anonymous, IP-keyed credit balances."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class GuestCredit(Base):
    """Credit bucket for one anonymous client, keyed by the keyed hash of its IP."""

    __tablename__ = "guest_credits"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_guest_credits_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ip_hash = Column(String, nullable=False, unique=True, index=True)
    raw_ip = Column(String, nullable=True)  # diagnostics only, never matched on
    credits = Column(Integer, nullable=False)
    reset_at = Column(DateTime(timezone=True), nullable=False)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=True)
