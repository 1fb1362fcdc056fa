import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.adapters.identity_gateway import IdentityGateway
from app.api.deps import get_identity_gateway, get_orchestrator, http_error
from app.schemas.checkout_schema import CheckoutOutcome
from app.services.checkout_orchestrator import CheckoutException, CheckoutOrchestrator

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verification", tags=["verification"])


class ManualVerificationIn(BaseModel):
    birthdate: Optional[date] = None


def _run(orch: CheckoutOrchestrator, op, *args):
    try:
        return op(*args)
    except CheckoutException as e:
        raise http_error(e)
    except Exception as e:
        log.exception("Unexpected verification failure for session %s", orch.session_uuid)
        raise HTTPException(status_code=500, detail=f"Internal server error: {type(e).__name__}")


@router.get("", summary="Verification status", response_model=CheckoutOutcome)
def verification_status(orch: CheckoutOrchestrator = Depends(get_orchestrator)):
    return orch.status()


@router.get("/config", summary="Public identity gateway configuration")
def gateway_config(gateway: IdentityGateway = Depends(get_identity_gateway)):
    # never includes the client secret
    return gateway.public_config()


@router.post("/identity", summary="Start identity verification", response_model=CheckoutOutcome)
def start_identity_verification(orch: CheckoutOrchestrator = Depends(get_orchestrator)):
    return _run(orch, orch.start_verification)


@router.get("/callback", summary="Redirect-back from the identity provider", response_model=CheckoutOutcome)
def verification_callback(
    identity_request_id: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    orch: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return _run(orch, orch.handle_redirect_back, identity_request_id, state)


@router.post("/poll", summary="Poll the in-flight verification once", response_model=CheckoutOutcome)
def poll_verification(orch: CheckoutOrchestrator = Depends(get_orchestrator)):
    return _run(orch, orch.poll_once)


@router.post("/manual", summary="Verify age from a birth date", response_model=CheckoutOutcome)
def manual_verification(
    payload: ManualVerificationIn,
    orch: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return _run(orch, orch.verify_birthdate, payload.birthdate)


@router.post("/reset", summary="Clear verification", response_model=CheckoutOutcome)
def reset_verification(orch: CheckoutOrchestrator = Depends(get_orchestrator)):
    return orch.reset()
