# backend/app/schemas/product_schema.py
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel
from pydantic import ConfigDict

class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    sku: str
    name: str
    description: Optional[str] = None
    price: Decimal
    category: Optional[str] = None
    image: Optional[str] = None
    active: bool
    age_restricted: bool
