from app.adapters.identity_gateway import IdentityGateway
from app.api.deps import get_identity_gateway
from app.db import engine
from fastapi import APIRouter, Depends
from sqlalchemy import text

router = APIRouter()


@router.get("/health", tags=["health"])
def health(gateway: IdentityGateway = Depends(get_identity_gateway)):
    db_ok = False
    gateway_ok = False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            db_ok = True
    except Exception:
        db_ok = False
    try:
        gateway_ok = gateway.health_check()
    except Exception:
        gateway_ok = False

    return {
        "status": "ok" if db_ok and gateway_ok else "degraded",
        "db": db_ok,
        "identity_gateway": gateway_ok,
        "gateway": gateway.name,
    }
