from datetime import datetime, timezone

from app.db import Base
from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String


class VerificationRecord(Base):
    __tablename__ = "verification_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_uuid = Column(String(64), unique=True, nullable=False, index=True)
    verified = Column(Boolean, nullable=False, default=False)
    verified_at_ms = Column(BigInteger, nullable=True)  # epoch millis
    method = Column(String(32), nullable=True)  # identity_gateway | manual
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
