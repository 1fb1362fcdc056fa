from datetime import datetime, timezone

from app.db import Base
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_uuid = Column(String(64), unique=True, nullable=False, index=True)
    state = Column(
        String(48), nullable=False, default="IDLE"
    )  # IDLE, AWAITING_EXTERNAL_VERIFICATION, POLLING, VERIFIED_RESUME, BLOCKED
    checkout_pending = Column(Boolean, nullable=False, default=False)
    blocked_reason = Column(Text, nullable=True)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
