import re
import uuid
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from app.adapters.identity_gateway import IdentityGateway
from app.adapters.klarna_identity import KlarnaIdentityGateway
from app.adapters.mock_identity import MockIdentityGateway
from app.config import settings
from app.db import get_db
from app.services.checkout_orchestrator import CheckoutException, CheckoutOrchestrator

_SESSION_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


def get_session_uuid(request: Request, response: Response) -> str:
    """Read the shopper's session cookie, issuing a new one if missing or malformed."""
    value = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if value and _SESSION_RE.match(value):
        return value
    value = uuid.uuid4().hex
    response.set_cookie(settings.SESSION_COOKIE_NAME, value, httponly=True, samesite="Lax")
    return value


@lru_cache(maxsize=1)
def _build_gateway(kind: str) -> IdentityGateway:
    if kind == "klarna":
        return KlarnaIdentityGateway.from_settings(settings)
    if kind == "mock":
        return MockIdentityGateway()
    raise ValueError(f"Unknown IDENTITY_GATEWAY: {kind}")


def get_identity_gateway() -> IdentityGateway:
    return _build_gateway(settings.IDENTITY_GATEWAY.lower())


def get_orchestrator(
    session_uuid: str = Depends(get_session_uuid),
    db: Session = Depends(get_db),
    gateway: IdentityGateway = Depends(get_identity_gateway),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(db, session_uuid, gateway)


def http_error(e: CheckoutException) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.to_detail())
