import logging

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_orchestrator, http_error
from app.schemas.checkout_schema import CheckoutOutcome
from app.services.checkout_orchestrator import CheckoutException, CheckoutOrchestrator

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


@router.post("", summary="Check out the cart (age-gated)", response_model=CheckoutOutcome)
def checkout(orch: CheckoutOrchestrator = Depends(get_orchestrator)):
    try:
        return orch.checkout()
    except CheckoutException as e:
        raise http_error(e)
    except Exception as e:
        log.exception("Unexpected checkout failure for session %s", orch.session_uuid)
        raise HTTPException(status_code=500, detail=f"Internal server error: {type(e).__name__}")


@router.get("/state", summary="Current checkout state", response_model=CheckoutOutcome)
def checkout_state(orch: CheckoutOrchestrator = Depends(get_orchestrator)):
    return orch.status()


@router.post("/acknowledge", summary="Dismiss a blocked checkout", response_model=CheckoutOutcome)
def acknowledge(orch: CheckoutOrchestrator = Depends(get_orchestrator)):
    return orch.acknowledge()
