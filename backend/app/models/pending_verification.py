from datetime import datetime, timezone

from app.db import Base
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text


class PendingVerificationRequest(Base):
    __tablename__ = "pending_verification_requests"
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_uuid = Column(
        String(64), unique=True, nullable=False, index=True
    )  # at most one in flight per session
    request_id = Column(String(256), nullable=False, index=True)  # provider-assigned
    request_url = Column(Text, nullable=True)
    state_token = Column(String(128), nullable=False)
    correlates_to_checkout = Column(Boolean, nullable=False, default=False)
    submitted_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
