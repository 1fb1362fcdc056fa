"""
Identity gateway contract shared by the live and mock adapters.

A gateway can do two things: submit a verification request (returning the URL the
shopper is redirected to and the provider's request id) and report the status of
a submitted request. Status payloads are parsed into strict types; anything the
provider leaves out simply stays None.
"""
import enum
from datetime import date
from typing import Any, Dict, Optional

from pydantic import BaseModel


class GatewayError(Exception):
    """Raised for any failure talking to the identity provider (network, HTTP, payload)."""

    def __init__(
        self,
        status: int,
        message: str,
        code: str = "gateway_error",
        error_id: Optional[str] = None,
        error_type: Optional[str] = None,
        hint: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.message = message
        self.code = code
        self.error_id = error_id
        self.error_type = error_type
        self.hint = hint
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        d = {"status": self.status, "code": self.code, "message": self.message}
        for k in ("error_id", "error_type", "hint", "details"):
            v = getattr(self, k)
            if v is not None:
                d[k] = v
        return d


class VerificationState(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    OTHER = "OTHER"

    @property
    def is_success(self) -> bool:
        return self in (VerificationState.APPROVED, VerificationState.COMPLETED)

    @property
    def is_terminal(self) -> bool:
        return self.is_success or self == VerificationState.FAILED


_STATE_ALIASES = {
    "APPROVED": VerificationState.APPROVED,
    "COMPLETED": VerificationState.COMPLETED,
    "FAILED": VerificationState.FAILED,
    "ERROR": VerificationState.FAILED,
    "REJECTED": VerificationState.FAILED,
    "DECLINED": VerificationState.FAILED,
    "CANCELLED": VerificationState.FAILED,
    "CANCELED": VerificationState.FAILED,
    "EXPIRED": VerificationState.FAILED,
    "PENDING": VerificationState.PENDING,
    "IN_PROGRESS": VerificationState.PENDING,
    "CREATED": VerificationState.PENDING,
    "INITIATED": VerificationState.PENDING,
}


def map_provider_state(raw: Any) -> VerificationState:
    if not isinstance(raw, str):
        return VerificationState.OTHER
    return _STATE_ALIASES.get(raw.strip().upper(), VerificationState.OTHER)


class VerifiedField(BaseModel):
    value: Optional[str] = None
    verified: bool = False


class Address(BaseModel):
    street_address: Optional[str] = None
    street_address2: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None

    def lines(self):
        parts = [
            self.street_address,
            self.street_address2,
            f"{self.postal_code or ''} {self.city or ''}".strip(),
            f"{self.region or ''} {self.country or ''}".strip(),
        ]
        return [p for p in parts if p and p.strip()]


class IdentityProfile(BaseModel):
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    name_verified: bool = False
    date_of_birth: Optional[date] = None
    date_of_birth_verified: bool = False
    email: Optional[VerifiedField] = None
    phone: Optional[VerifiedField] = None
    billing_address: Optional[Address] = None
    customer_id: Optional[str] = None

    @property
    def full_name(self) -> Optional[str]:
        name = f"{self.given_name or ''} {self.family_name or ''}".strip()
        return name or None


class SubmittedRequest(BaseModel):
    request_id: str
    request_url: str


class VerificationStatus(BaseModel):
    request_id: str
    state: VerificationState
    raw_state: Optional[str] = None
    profile: Optional[IdentityProfile] = None
    payload: Dict[str, Any] = {}


def _dict(value) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _parse_date(value) -> Optional[date]:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def parse_identity_profile(raw: Any) -> Optional[IdentityProfile]:
    """
    Build an IdentityProfile from a provider customer_profile object.
    Missing or malformed sections are skipped; returns None if nothing usable is present.
    """
    if not isinstance(raw, dict) or not raw:
        return None
    name = _dict(raw.get("name"))
    dob = _dict(raw.get("date_of_birth"))
    email = _dict(raw.get("email"))
    phone = _dict(raw.get("phone"))
    addr = _dict(raw.get("billing_address"))
    customer_id = _dict(raw.get("customer_id"))

    profile = IdentityProfile(
        given_name=_str(name.get("given_name")),
        family_name=_str(name.get("family_name")),
        name_verified=bool(name.get("name_verified")),
        date_of_birth=_parse_date(dob.get("date_of_birth")),
        date_of_birth_verified=bool(dob.get("date_of_birth_verified")),
        email=(
            VerifiedField(value=email["email"], verified=bool(email.get("email_verified")))
            if _str(email.get("email"))
            else None
        ),
        phone=(
            VerifiedField(value=phone["phone"], verified=bool(phone.get("phone_verified")))
            if _str(phone.get("phone"))
            else None
        ),
        billing_address=(
            Address(**{k: _str(addr.get(k)) for k in Address.model_fields}) if addr else None
        ),
        customer_id=_str(customer_id.get("customer_id")),
    )
    return profile


def parse_identity_status(request_id: str, payload: Any) -> VerificationStatus:
    """
    Parse a status payload. The profile lives under state_context.klarna_customer.customer_profile;
    a bare placeholder such as {"initiated": true} maps to OTHER.
    """
    body = _dict(payload)
    raw_state = body.get("state")
    customer = _dict(_dict(body.get("state_context")).get("klarna_customer"))
    return VerificationStatus(
        request_id=request_id,
        state=map_provider_state(raw_state),
        raw_state=raw_state if isinstance(raw_state, str) else None,
        profile=parse_identity_profile(customer.get("customer_profile")),
        payload=body,
    )


class IdentityGateway:
    """Base class for identity gateway adapters."""

    name = "abstract"

    def submit_verification_request(self, state_token: str) -> SubmittedRequest:
        raise NotImplementedError

    def poll_verification_status(self, request_id: str) -> VerificationStatus:
        raise NotImplementedError

    def health_check(self) -> bool:
        return True

    def public_config(self) -> Dict[str, Any]:
        return {"gateway": self.name}
