from decimal import Decimal
from typing import List, Optional, Tuple

from app.models.product import Product
from sqlalchemy import func
from sqlalchemy.orm import Session


class ProductRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_sku(self, sku: str) -> Optional[Product]:
        """Return an active product by sku, or None."""
        return (
            self.db.query(Product)
            .filter(Product.sku == sku, Product.active == True)
            .first()
        )

    def list(
        self,
        q: Optional[str] = None,
        category: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Product], int]:
        query = self.db.query(Product).filter(Product.active == True)
        if q:
            like = f"%{q}%"
            query = query.filter(
                (Product.name.ilike(like)) | (Product.description.ilike(like))
            )
        if category and category != "all":
            query = query.filter(Product.category == category)
        total = query.with_entities(func.count()).scalar() or 0
        items = query.order_by(Product.name).offset((page - 1) * size).limit(size).all()
        return items, total

    def categories(self) -> List[str]:
        rows = (
            self.db.query(Product.category)
            .filter(Product.active == True, Product.category.isnot(None))
            .distinct()
            .order_by(Product.category)
            .all()
        )
        return [r[0] for r in rows]

    def create_or_update(
        self,
        sku: str,
        name: str,
        price,
        category: str = None,
        age_restricted: bool = False,
        description: str = None,
        image: str = None,
        active: bool = True,
    ):
        price = Decimal(str(price))
        p = self.db.query(Product).filter(Product.sku == sku).first()
        if p:
            p.name = name
            p.price = price
            p.category = category
            p.age_restricted = age_restricted
            p.description = description
            p.image = image
            p.active = active
        else:
            p = Product(
                sku=sku,
                name=name,
                price=price,
                category=category,
                age_restricted=age_restricted,
                description=description,
                image=image,
                active=active,
            )
            self.db.add(p)
        self.db.flush()
        return p
