from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.models.cart import Cart
from app.models.cart_item import CartItem


class CartRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_session(self, session_uuid: str) -> Optional[Cart]:
        return self.db.query(Cart).filter(Cart.session_uuid == session_uuid).first()

    def get_or_create(self, session_uuid: str) -> Cart:
        c = self.get_by_session(session_uuid)
        if c is None:
            c = Cart(session_uuid=session_uuid)
            self.db.add(c)
            self.db.flush()
        return c

    def find_item(self, cart: Cart, item_id: str) -> Optional[CartItem]:
        return next((it for it in cart.items if it.item_id == item_id), None)

    def increment_or_insert(
        self, cart: Cart, item_id: str, name: str, unit_price: Decimal, age_restricted: bool
    ) -> CartItem:
        item = self.find_item(cart, item_id)
        if item:
            item.quantity += 1
        else:
            item = CartItem(
                item_id=item_id,
                name=name,
                unit_price=unit_price,
                age_restricted=age_restricted,
                quantity=1,
            )
            cart.items.append(item)
        self.db.flush()
        return item

    def set_quantity(self, cart: Cart, item_id: str, quantity: int) -> Optional[CartItem]:
        item = self.find_item(cart, item_id)
        if item is None:
            return None
        item.quantity = quantity
        self.db.flush()
        return item

    def remove_item(self, cart: Cart, item_id: str) -> bool:
        item = self.find_item(cart, item_id)
        if item is None:
            return False
        cart.items.remove(item)  # delete-orphan cascade removes the row
        self.db.flush()
        return True

    def clear(self, cart: Cart):
        cart.items.clear()
        self.db.flush()
