from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from app.db import Base


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    session_uuid = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, default="COMPLETED")
    total = Column(Numeric(18, 6, asdecimal=True), nullable=False, default=0)
    age_verified = Column(
        Boolean, nullable=False, default=False
    )  # checkout passed the age gate
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )

    lines = relationship(
        "OrderLine", back_populates="order", cascade="all, delete-orphan"
    )


class OrderLine(Base):
    __tablename__ = "order_lines"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    item_id = Column(String(64), nullable=False)
    name = Column(String(256), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(18, 6, asdecimal=True), nullable=False)
    age_restricted = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="lines")
