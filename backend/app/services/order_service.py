import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.order import Order, OrderLine
from app.services.cart_service import CartService
from app.services.events import CHECKOUT_COMPLETED, SessionEvents

log = logging.getLogger(__name__)


class OrderServiceException(Exception):
    pass


class OrderService:
    """Records a completed checkout. This storefront is a demo: no payment is taken."""

    def __init__(self, db: Session, events: Optional[SessionEvents] = None):
        self.db = db
        self.events = events

    def _gen_order_number(self) -> str:
        return f"ORD-{uuid4().hex[:10].upper()}"

    def complete_checkout(self, cart: CartService, age_verified: bool = False) -> Order:
        """
        Turn the cart into a COMPLETED order and empty the cart in the same commit.
        The total charged is the unrounded sum of unit price x quantity.
        """
        lines = cart.items()
        if not lines:
            raise OrderServiceException("cart empty")
        total = cart.total()
        try:
            order = Order(
                order_number=self._gen_order_number(),
                session_uuid=cart.session_uuid,
                status="COMPLETED",
                total=total,
                age_verified=age_verified,
            )
            for it in lines:
                order.lines.append(
                    OrderLine(
                        item_id=it.item_id,
                        name=it.name,
                        quantity=it.quantity,
                        unit_price=it.unit_price,
                        age_restricted=it.age_restricted,
                    )
                )
            self.db.add(order)
            cart.clear(commit=False)
            self.db.commit()
            self.db.refresh(order)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise OrderServiceException(f"Failed to create order: {e}")

        log.info(
            "Checkout completed for session %s: order=%s total=%s age_verified=%s",
            cart.session_uuid, order.order_number, total, age_verified,
        )
        if self.events is not None:
            self.events.publish(
                CHECKOUT_COMPLETED,
                {"order_number": order.order_number, "total": str(total)},
            )
        return order
