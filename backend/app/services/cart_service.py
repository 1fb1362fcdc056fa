from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.cart import Cart
from app.models.cart_item import CartItem
from app.repositories.cart_repo import CartRepository
from app.repositories.product_repo import ProductRepository
from app.services.events import CART_CHANGED, SessionEvents


class CartValidationError(ValueError):
    pass


def format_money(amount: Decimal) -> str:
    """Two-place rendering for display; stored and summed amounts stay unrounded."""
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class CartService:
    def __init__(self, db: Session, session_uuid: str, events: Optional[SessionEvents] = None):
        self.db = db
        self.session_uuid = session_uuid
        self.events = events
        self.cart_repo = CartRepository(db)
        self.product_repo = ProductRepository(db)

    @property
    def cart(self) -> Cart:
        return self.cart_repo.get_or_create(self.session_uuid)

    def items(self) -> List[CartItem]:
        return list(self.cart.items)

    def add(self, item: Dict) -> CartItem:
        """
        item: {id, name, price, age_restricted}
        Adding an id already in the cart bumps its quantity by one.
        """
        price = Decimal(str(item["price"]))
        if price < 0:
            raise CartValidationError("Price must not be negative")
        line = self.cart_repo.increment_or_insert(
            self.cart,
            item_id=str(item["id"]),
            name=item.get("name") or str(item["id"]),
            unit_price=price,
            age_restricted=bool(item.get("age_restricted", False)),
        )
        self.db.commit()
        self._changed("add", line.item_id)
        return line

    def add_product(self, sku: str) -> CartItem:
        product = self.product_repo.get_by_sku(sku)
        if not product:
            raise CartValidationError("SKU not found")
        return self.add(
            {
                "id": product.sku,
                "name": product.name,
                "price": product.price,
                "age_restricted": product.age_restricted,
            }
        )

    def remove(self, item_id: str) -> None:
        if self.cart_repo.remove_item(self.cart, item_id):
            self.db.commit()
            self._changed("remove", item_id)

    def set_quantity(self, item_id: str, quantity: int) -> Optional[CartItem]:
        if quantity <= 0:
            self.remove(item_id)
            return None
        line = self.cart_repo.set_quantity(self.cart, item_id, quantity)
        if line is not None:
            self.db.commit()
            self._changed("quantity", item_id)
        return line

    def total(self) -> Decimal:
        return sum((it.unit_price * it.quantity for it in self.cart.items), Decimal("0"))

    def item_count(self) -> int:
        return sum(it.quantity for it in self.cart.items)

    def has_age_restricted_items(self) -> bool:
        return any(it.age_restricted for it in self.cart.items)

    def is_empty(self) -> bool:
        return not self.cart.items

    def clear(self, commit: bool = True) -> None:
        self.cart_repo.clear(self.cart)
        if commit:
            self.db.commit()
        self._changed("clear", None)

    def snapshot(self) -> Dict:
        total = self.total()
        return {
            "items": [
                {
                    "id": it.item_id,
                    "name": it.name,
                    "unit_price": it.unit_price,
                    "age_restricted": it.age_restricted,
                    "quantity": it.quantity,
                    "line_total": it.line_total,
                }
                for it in self.cart.items
            ],
            "total": total,
            "display_total": format_money(total),
            "item_count": self.item_count(),
            "has_age_restricted_items": self.has_age_restricted_items(),
        }

    def _changed(self, action: str, item_id: Optional[str]):
        if self.events is not None:
            self.events.publish(
                CART_CHANGED,
                {"action": action, "item_id": item_id, "item_count": self.item_count()},
            )
