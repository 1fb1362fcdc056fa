from app.api.deps import get_session_uuid
from app.db import get_db
from app.services.cart_service import CartService, CartValidationError
from app.services.events import SessionEvents
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

router = APIRouter(prefix="/api/cart", tags=["cart"])


class AddItemIn(BaseModel):
    sku: str


class SetQuantityIn(BaseModel):
    quantity: int


def _cart_body(svc: CartService, events: SessionEvents):
    body = svc.snapshot()
    body["events"] = events.names()
    return body


@router.get("", summary="Get cart")
def get_cart(session_uuid: str = Depends(get_session_uuid), db: Session = Depends(get_db)):
    events = SessionEvents()
    svc = CartService(db, session_uuid, events)
    return _cart_body(svc, events)


@router.post("/items", summary="Add item to cart")
def add_item(
    payload: AddItemIn,
    session_uuid: str = Depends(get_session_uuid),
    db: Session = Depends(get_db),
):
    events = SessionEvents()
    svc = CartService(db, session_uuid, events)
    try:
        item = svc.add_product(payload.sku)
    except CartValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "item_id": item.item_id,
        "quantity": item.quantity,
        "cart": svc.snapshot(),
        "events": events.names(),
    }


@router.patch("/items/{item_id}", summary="Set item quantity (<= 0 removes)")
def set_quantity(
    item_id: str,
    payload: SetQuantityIn,
    session_uuid: str = Depends(get_session_uuid),
    db: Session = Depends(get_db),
):
    events = SessionEvents()
    svc = CartService(db, session_uuid, events)
    svc.set_quantity(item_id, payload.quantity)
    return _cart_body(svc, events)


@router.delete("/items/{item_id}", summary="Remove item")
def remove_item(
    item_id: str,
    session_uuid: str = Depends(get_session_uuid),
    db: Session = Depends(get_db),
):
    events = SessionEvents()
    svc = CartService(db, session_uuid, events)
    svc.remove(item_id)
    return {"ok": True, "cart": svc.snapshot(), "events": events.names()}
