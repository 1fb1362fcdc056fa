from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from app.adapters.identity_gateway import IdentityProfile


class OrderLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    item_id: str
    name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    age_restricted: bool


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    order_number: str
    status: str
    total: Decimal
    age_verified: bool
    lines: List[OrderLineOut] = []


class CheckoutOutcome(BaseModel):
    """What the UI needs to render after any orchestrator operation."""

    state: str
    message: Optional[str] = None
    verified: bool = False
    verification_expires_at: Optional[datetime] = None
    redirect_url: Optional[str] = None
    request_id: Optional[str] = None
    checkout_pending: bool = False
    resumed_checkout: bool = False
    stale: bool = False
    order: Optional[OrderOut] = None
    profile: Optional[IdentityProfile] = None
    age: Optional[int] = None
    events: List[str] = []
