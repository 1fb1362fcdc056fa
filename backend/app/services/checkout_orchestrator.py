"""
Checkout orchestration for age-restricted carts.

The orchestrator owns one shopper session's cart, verification flag and in-flight
identity request. Its state is persisted in CheckoutSession so the flow survives
the redirect to the identity provider and back:

    IDLE -> AWAITING_EXTERNAL_VERIFICATION -> POLLING -> VERIFIED_RESUME -> IDLE
                    |                            |
                    +---------> BLOCKED <--------+

A verification is only ever granted on an explicit terminal success from the
gateway or on a local birth-date check. An under-age result clears the flag;
every other error path leaves it alone.
"""
import enum
import logging
import os
import re
import secrets
import tempfile
import time
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Optional, Tuple

from filelock import FileLock, Timeout
from sqlalchemy.orm import Session

from app.adapters.identity_gateway import (
    GatewayError,
    IdentityGateway,
    IdentityProfile,
    VerificationStatus,
)
from app.config import settings
from app.repositories.checkout_repo import CheckoutSessionRepository
from app.repositories.verification_repo import VerificationRepository
from app.schemas.checkout_schema import CheckoutOutcome, OrderOut
from app.services.cart_service import CartService
from app.services.events import CHECKOUT_BLOCKED, SessionEvents
from app.services.order_service import OrderService, OrderServiceException
from app.services.verification_service import VerificationState, calculate_age, utc_now

log = logging.getLogger(__name__)


class CheckoutState(str, enum.Enum):
    IDLE = "IDLE"
    AWAITING_EXTERNAL_VERIFICATION = "AWAITING_EXTERNAL_VERIFICATION"
    POLLING = "POLLING"
    VERIFIED_RESUME = "VERIFIED_RESUME"
    BLOCKED = "BLOCKED"


class CheckoutException(Exception):
    code = "checkout_error"
    http_status = 400

    def __init__(self, message: str, state: Optional[CheckoutState] = None, **extra):
        super().__init__(message)
        self.message = message
        self.state = state
        self.extra = extra

    def to_detail(self) -> dict:
        detail = {
            "error": self.message,
            "code": self.code,
            "state": self.state.value if self.state else None,
        }
        detail.update(self.extra)
        return detail


class CheckoutValidationError(CheckoutException):
    code = "validation_error"


class VerificationDenied(CheckoutException):
    code = "verification_denied"
    http_status = 403


class ProtocolError(CheckoutException):
    code = "protocol_error"


class CheckoutGatewayError(CheckoutException):
    """A GatewayError surfaced to the shopper with a retry affordance."""

    def __init__(self, error: GatewayError, state: Optional[CheckoutState] = None):
        super().__init__(error.message, state=state, gateway=error.to_dict(), retryable=True)
        self.gateway_error = error
        self.code = error.code
        self.http_status = 504 if error.code in ("timeout", "poll_timeout") else 502


LOCKS_DIR = os.path.join(tempfile.gettempdir(), "agegate_locks")


def _lock_name(session_uuid: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", session_uuid)[:64]


def purge_stale_lock_files(older_than_seconds: float, locks_dir: str = LOCKS_DIR) -> int:
    """Remove session lock files untouched for longer than any lock is ever held."""
    if not os.path.isdir(locks_dir):
        return 0
    cutoff = time.time() - older_than_seconds
    removed = 0
    for name in os.listdir(locks_dir):
        path = os.path.join(locks_dir, name)
        try:
            if name.endswith(".lock") and os.path.getmtime(path) < cutoff:
                os.remove(path)
                removed += 1
        except FileNotFoundError:
            continue
    return removed


class CheckoutOrchestrator:
    def __init__(
        self,
        db: Session,
        session_uuid: str,
        gateway: IdentityGateway,
        events: Optional[SessionEvents] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        minimum_age: Optional[int] = None,
    ):
        self.db = db
        self.session_uuid = session_uuid
        self.gateway = gateway
        self.events = events if events is not None else SessionEvents()
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.VERIFICATION_POLL_INTERVAL_SECONDS
        )
        self.max_poll_attempts = (
            max_poll_attempts if max_poll_attempts is not None else settings.VERIFICATION_POLL_MAX_ATTEMPTS
        )
        self.minimum_age = minimum_age if minimum_age is not None else settings.MINIMUM_AGE

        self.cart = CartService(db, session_uuid, self.events)
        self.verification = VerificationState(db, session_uuid, clock=clock, events=self.events)
        self.orders = OrderService(db, self.events)
        self.sessions = CheckoutSessionRepository(db)
        self.requests = VerificationRepository(db)

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> CheckoutState:
        return CheckoutState(self._session().state)

    def _session(self):
        return self.sessions.get_or_create(self.session_uuid)

    def _transition(self, state: CheckoutState, **fields):
        s = self._session()
        prev = s.state
        self.sessions.update(s, state=state.value, **fields)
        self.db.commit()
        if prev != state.value:
            log.info("Session %s: %s -> %s", self.session_uuid, prev, state.value)

    def _block(self, exc: CheckoutException) -> CheckoutException:
        self._transition(CheckoutState.BLOCKED, blocked_reason=exc.message)
        exc.state = CheckoutState.BLOCKED
        self.events.publish(CHECKOUT_BLOCKED, {"reason": exc.message, "code": exc.code})
        return exc

    def _lock(self) -> FileLock:
        os.makedirs(LOCKS_DIR, exist_ok=True)
        path = os.path.join(LOCKS_DIR, f"session_{_lock_name(self.session_uuid)}.lock")
        # mtime marks last use for purge_stale_lock_files
        Path(path).touch()
        return FileLock(path)

    def _outcome(self, message: Optional[str] = None, **extra) -> CheckoutOutcome:
        s = self._session()
        pending = self.requests.get_pending(self.session_uuid)
        extra.setdefault("request_id", pending.request_id if pending else None)
        return CheckoutOutcome(
            state=s.state,
            message=message,
            verified=self.verification.is_verified(),
            verification_expires_at=self.verification.expires_at(),
            checkout_pending=s.checkout_pending,
            events=self.events.names(),
            **extra,
        )

    def status(self) -> CheckoutOutcome:
        return self._outcome(message=self._session().blocked_reason)

    # --------------------------------------------------------------- checkout

    def checkout(self) -> CheckoutOutcome:
        if self.cart.is_empty():
            self._transition(CheckoutState.IDLE, blocked_reason=None)
            raise CheckoutValidationError("cart empty", state=CheckoutState.IDLE)
        if not self.cart.has_age_restricted_items():
            return self._complete(age_verified=False)
        if self.verification.is_verified():
            return self._complete(age_verified=True)
        return self._request_verification(correlates_to_checkout=True)

    def _complete(self, age_verified: bool, **extra) -> CheckoutOutcome:
        if self.cart.is_empty():
            self._transition(CheckoutState.IDLE, checkout_pending=False, blocked_reason=None)
            raise CheckoutValidationError("cart empty", state=CheckoutState.IDLE)
        try:
            order = self.orders.complete_checkout(self.cart, age_verified=age_verified)
        except OrderServiceException as e:
            raise self._block(CheckoutException(str(e)))
        self._transition(CheckoutState.IDLE, checkout_pending=False, blocked_reason=None)
        extra.setdefault("message", "Checkout complete. This is a demo - no payment was processed.")
        return self._outcome(order=OrderOut.model_validate(order), **extra)

    # ----------------------------------------------------------- verification

    def start_verification(self) -> CheckoutOutcome:
        """Verify without checking out; success returns to the storefront."""
        if self.verification.is_verified():
            return self._outcome(message="Already verified")
        return self._request_verification(correlates_to_checkout=False)

    def _request_verification(self, correlates_to_checkout: bool) -> CheckoutOutcome:
        state_token = secrets.token_urlsafe(24)
        try:
            with self._lock().acquire(timeout=10):
                # a new request supersedes whatever was in flight
                self.requests.delete_pending(self.session_uuid)
                self._transition(
                    CheckoutState.AWAITING_EXTERNAL_VERIFICATION,
                    checkout_pending=correlates_to_checkout,
                    blocked_reason=None,
                )
                try:
                    submitted = self.gateway.submit_verification_request(state_token)
                except GatewayError as e:
                    log.error(
                        "Identity request submission failed for session %s: %s (error_id=%s)",
                        self.session_uuid, e.message, e.error_id,
                    )
                    raise self._block(CheckoutGatewayError(e))
                self.requests.replace_pending(
                    self.session_uuid,
                    request_id=submitted.request_id,
                    request_url=submitted.request_url,
                    state_token=state_token,
                    correlates_to_checkout=correlates_to_checkout,
                )
                self.db.commit()
        except Timeout:
            raise CheckoutException(
                "Another verification step is in progress; try again", state=self.state
            )
        log.info(
            "Session %s awaiting external verification %s (checkout=%s)",
            self.session_uuid, submitted.request_id, correlates_to_checkout,
        )
        return self._outcome(
            message="Redirecting to identity provider",
            redirect_url=submitted.request_url,
            request_id=submitted.request_id,
        )

    def handle_redirect_back(self, request_id: Optional[str], state_token: Optional[str]) -> CheckoutOutcome:
        """Entry point when the provider sends the shopper back; polls until terminal."""
        if not request_id or not state_token:
            raise self._block(
                ProtocolError("Verification callback is missing identity_request_id or state")
            )
        pending = self.requests.get_pending(self.session_uuid, fresh=True)
        if pending is None or pending.request_id != request_id:
            raise self._block(ProtocolError("Unknown or superseded verification request"))
        if not secrets.compare_digest(pending.state_token, state_token):
            raise self._block(ProtocolError("Verification callback state does not match"))
        self._transition(CheckoutState.POLLING)
        return self._poll_until_terminal(request_id)

    def poll_once(self) -> CheckoutOutcome:
        """Single poll step, for clients that drive polling themselves."""
        pending = self.requests.get_pending(self.session_uuid, fresh=True)
        if pending is None:
            raise ProtocolError("No verification request in flight", state=self.state)
        self._transition(CheckoutState.POLLING)
        status, outcome = self._poll_step(pending.request_id)
        if outcome is not None:
            return outcome
        return self._outcome(
            message=f"Identity request is in state: {status.raw_state or status.state.value}. Please wait...",
        )

    def _poll_until_terminal(self, request_id: str) -> CheckoutOutcome:
        for attempt in range(1, self.max_poll_attempts + 1):
            status, outcome = self._poll_step(request_id)
            if outcome is not None:
                return outcome
            log.debug("Poll %d/%d for %s: %s", attempt, self.max_poll_attempts, request_id, status.raw_state)
            if attempt < self.max_poll_attempts:
                self.sleep(self.poll_interval)
            if self._is_stale(request_id):
                return self._stale_outcome(request_id)
        raise self._block(
            CheckoutGatewayError(
                GatewayError(
                    504,
                    f"Verification did not complete after {self.max_poll_attempts} attempts",
                    code="poll_timeout",
                )
            )
        )

    def _is_stale(self, request_id: str) -> bool:
        pending = self.requests.get_pending(self.session_uuid, fresh=True)
        return pending is None or pending.request_id != request_id

    def _stale_outcome(self, request_id: str) -> CheckoutOutcome:
        log.warning("Discarding poll result for superseded request %s (session %s)", request_id, self.session_uuid)
        return self._outcome(message="Verification request was superseded", stale=True)

    def _poll_step(self, request_id: str) -> Tuple[Optional[VerificationStatus], Optional[CheckoutOutcome]]:
        """
        Poll once. Returns (status, None) while the request is still running and
        (status, outcome) once it reached a terminal state or was superseded.
        """
        try:
            status = self.gateway.poll_verification_status(request_id)
        except GatewayError as e:
            if self._is_stale(request_id):
                return None, self._stale_outcome(request_id)
            log.error("Polling %s failed: %s (error_id=%s)", request_id, e.message, e.error_id)
            raise self._block(CheckoutGatewayError(e))

        if not status.state.is_terminal:
            return status, None

        age = None
        if status.profile and status.profile.date_of_birth:
            age = calculate_age(status.profile.date_of_birth, self.clock().date())

        try:
            with self._lock().acquire(timeout=10):
                if self._is_stale(request_id):
                    return status, self._stale_outcome(request_id)
                correlates = self.requests.get_pending(self.session_uuid).correlates_to_checkout
                self.requests.delete_pending(self.session_uuid)
                self.db.commit()
                granted = status.state.is_success and (age is None or age >= self.minimum_age)
                if granted:
                    self.verification.set_verified(True, method="identity_gateway")
                elif status.state.is_success:
                    # underage profile revokes any earlier verification
                    self.verification.reset()
        except Timeout:
            raise CheckoutException("Another verification step is in progress; try again", state=self.state)

        if not status.state.is_success:
            raise self._block(
                VerificationDenied(
                    "Age verification failed. Please try again.",
                    provider_state=status.raw_state,
                )
            )
        if not granted:
            raise self._block(
                VerificationDenied(
                    f"Sorry, you must be {self.minimum_age} years or older.", age=age
                )
            )
        return status, self._on_verified(correlates, profile=status.profile, age=age)

    def _on_verified(
        self,
        resume_checkout: bool,
        profile: Optional[IdentityProfile] = None,
        age: Optional[int] = None,
        message: str = "Age verified",
    ) -> CheckoutOutcome:
        if not self.verification.is_verified():
            raise self._block(
                CheckoutException("Verification could not be recorded; please try again")
            )
        if resume_checkout:
            self._transition(CheckoutState.VERIFIED_RESUME)
            return self._complete(
                age_verified=True, resumed_checkout=True, profile=profile, age=age
            )
        self._transition(CheckoutState.IDLE, checkout_pending=False, blocked_reason=None)
        return self._outcome(message=message, profile=profile, age=age)

    def verify_birthdate(self, birth_date: Optional[date]) -> CheckoutOutcome:
        """Manual fallback: calendar age from a shopper-supplied birth date."""
        if birth_date is None:
            raise CheckoutValidationError("Please enter your date of birth.", state=self.state)
        today = self.clock().date()
        if birth_date > today:
            raise CheckoutValidationError("Date of birth cannot be in the future.", state=self.state)
        age = calculate_age(birth_date, today)
        if age < self.minimum_age:
            self.verification.reset()
            raise self._block(
                VerificationDenied(
                    f"Sorry, you must be {self.minimum_age} years or older. "
                    f"You are currently {age} years old.",
                    age=age,
                    required_age=self.minimum_age,
                )
            )
        self.verification.set_verified(True, method="manual")
        pending = self.requests.get_pending(self.session_uuid)
        resume = self._session().checkout_pending or bool(pending and pending.correlates_to_checkout)
        # the manual check supersedes any in-flight provider request
        self.requests.delete_pending(self.session_uuid)
        self.db.commit()
        return self._on_verified(resume, age=age, message=f"Age verified! You are {age} years old.")

    # ---------------------------------------------------------------- control

    def acknowledge(self) -> CheckoutOutcome:
        if self.state == CheckoutState.BLOCKED:
            self._transition(CheckoutState.IDLE, checkout_pending=False, blocked_reason=None)
        return self._outcome()

    def reset(self) -> CheckoutOutcome:
        self.requests.delete_pending(self.session_uuid)
        self.verification.reset()
        self._transition(CheckoutState.IDLE, checkout_pending=False, blocked_reason=None)
        return self._outcome(message="Verification reset")
