from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from app.db import Base


class CartItem(Base):
    __tablename__ = "cart_items"
    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(
        Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id = Column(String(64), nullable=False, index=True)  # product identity (sku)
    name = Column(String(256), nullable=False)
    unit_price = Column(
        Numeric(18, 6, asdecimal=True), nullable=False, default=0
    )  # price at time of add, unrounded
    age_restricted = Column(Boolean, nullable=False, default=False)
    quantity = Column(Integer, nullable=False, default=1)  # never stored <= 0

    cart = relationship("Cart", back_populates="items")

    @property
    def line_total(self):
        return self.unit_price * self.quantity
