import os
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from app.adapters.identity_gateway import GatewayError
from app.adapters.mock_identity import MockIdentityGateway
from app.db import SessionLocal, init_db
from app.models.order import Order
from app.repositories.verification_repo import VerificationRepository
from app.services.checkout_orchestrator import (
    CheckoutGatewayError,
    CheckoutOrchestrator,
    CheckoutState,
    CheckoutValidationError,
    ProtocolError,
    VerificationDenied,
    purge_stale_lock_files,
)
from app.services.events import (
    CART_CHANGED,
    CHECKOUT_BLOCKED,
    CHECKOUT_COMPLETED,
    VERIFICATION_CHANGED,
)
from app.services.verification_service import to_epoch_millis

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

PLASTERS = {"id": "p1", "name": "Plasters", "price": "9.99", "age_restricted": False}
NICOTINE = {"id": "p2", "name": "Nicotine Gum", "price": "19.99", "age_restricted": True}


def setup_module(module):
    init_db()


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


def make_orch(db, gateway, sleep=lambda seconds: None, max_poll_attempts=5):
    return CheckoutOrchestrator(
        db,
        uuid4().hex,
        gateway,
        clock=lambda: NOW,
        sleep=sleep,
        poll_interval=0,
        max_poll_attempts=max_poll_attempts,
    )


def restricted_cart(orch, qty=2):
    orch.cart.add(NICOTINE)
    orch.cart.set_quantity("p2", qty)


def state_token(orch):
    return orch.requests.get_pending(orch.session_uuid).state_token


# --- direct checkout -------------------------------------------------------


def test_empty_cart_reports_cart_empty_without_gateway(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    with pytest.raises(CheckoutValidationError) as exc:
        orch.checkout()
    assert exc.value.message == "cart empty"
    assert exc.value.state == CheckoutState.IDLE
    assert orch.state == CheckoutState.IDLE
    assert gw.calls == []


def test_unrestricted_cart_completes_directly(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    orch.cart.add(PLASTERS)
    outcome = orch.checkout()
    assert outcome.state == CheckoutState.IDLE.value
    assert outcome.order.total == Decimal("9.99")
    assert outcome.order.age_verified is False
    assert orch.cart.is_empty()
    assert gw.calls == []
    assert CHECKOUT_COMPLETED in outcome.events
    assert db.query(Order).filter(Order.session_uuid == orch.session_uuid).count() == 1


def test_verified_session_skips_gateway(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    orch.verification.set_verified(True)
    restricted_cart(orch)
    outcome = orch.checkout()
    assert outcome.order.total == Decimal("39.98")
    assert outcome.order.age_verified is True
    assert gw.calls == []


def test_expired_verification_triggers_gateway(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    VerificationRepository(db).store_record(orch.session_uuid, to_epoch_millis(NOW - timedelta(hours=25)))
    db.commit()
    restricted_cart(orch)
    outcome = orch.checkout()
    assert outcome.state == CheckoutState.AWAITING_EXTERNAL_VERIFICATION.value
    assert gw.count("submit") == 1


# --- external verification -------------------------------------------------


def test_restricted_cart_submits_once_and_redirects(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    restricted_cart(orch)
    outcome = orch.checkout()
    assert outcome.state == CheckoutState.AWAITING_EXTERNAL_VERIFICATION.value
    assert outcome.redirect_url.startswith(gw.base_url)
    assert outcome.checkout_pending is True
    assert gw.count("submit") == 1
    assert gw.count("poll") == 0
    assert orch.verification.is_verified() is False
    pending = orch.requests.get_pending(orch.session_uuid)
    assert pending.correlates_to_checkout is True
    assert pending.request_id == outcome.request_id


def test_redirect_back_polls_until_approved_and_resumes_checkout(db):
    sleeps = []
    gw = MockIdentityGateway(script=["PENDING", "APPROVED"], request_id="abc")
    orch = make_orch(db, gw, sleep=sleeps.append)
    restricted_cart(orch)
    orch.checkout()

    outcome = orch.handle_redirect_back("abc", state_token(orch))

    assert [c[0] for c in gw.calls] == ["submit", "poll", "poll"]
    assert sleeps == [0]
    assert outcome.resumed_checkout is True
    assert outcome.order.total == Decimal("39.98")
    assert outcome.verified is True
    assert outcome.age == 35
    assert outcome.profile.full_name == "Alex Example"
    assert orch.state == CheckoutState.IDLE
    assert orch.cart.is_empty()
    assert orch.requests.get_pending(orch.session_uuid) is None
    assert VERIFICATION_CHANGED in outcome.events
    assert CHECKOUT_COMPLETED in outcome.events


def test_standalone_verification_returns_to_storefront(db):
    gw = MockIdentityGateway(script=["COMPLETED"])
    orch = make_orch(db, gw)
    orch.cart.add(NICOTINE)
    started = orch.start_verification()
    assert started.checkout_pending is False

    outcome = orch.handle_redirect_back(started.request_id, state_token(orch))
    assert outcome.state == CheckoutState.IDLE.value
    assert outcome.verified is True
    assert outcome.order is None
    assert orch.cart.item_count() == 1


def test_already_verified_start_is_noop(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    orch.verification.set_verified(True)
    assert orch.start_verification().message == "Already verified"
    assert gw.calls == []


def test_failed_verification_blocks_and_leaves_cart(db):
    gw = MockIdentityGateway(script=["PENDING", "FAILED"])
    orch = make_orch(db, gw)
    restricted_cart(orch)
    started = orch.checkout()
    with pytest.raises(VerificationDenied) as exc:
        orch.handle_redirect_back(started.request_id, state_token(orch))
    assert exc.value.state == CheckoutState.BLOCKED
    assert orch.state == CheckoutState.BLOCKED
    assert orch.verification.is_verified() is False
    assert orch.cart.item_count() == 2
    assert CHECKOUT_BLOCKED in orch.events.names()

    orch.acknowledge()
    assert orch.state == CheckoutState.IDLE


def test_underage_provider_profile_is_denied(db):
    gw = MockIdentityGateway(
        script=["APPROVED"],
        profile={"date_of_birth": {"date_of_birth": "2010-06-01", "date_of_birth_verified": True}},
    )
    orch = make_orch(db, gw)
    restricted_cart(orch)
    started = orch.checkout()
    with pytest.raises(VerificationDenied):
        orch.handle_redirect_back(started.request_id, state_token(orch))
    assert orch.verification.is_verified() is False
    assert orch.cart.item_count() == 2


def test_underage_provider_profile_revokes_earlier_verification(db):
    gw = MockIdentityGateway(
        script=["APPROVED"],
        profile={"date_of_birth": {"date_of_birth": "2010-06-01", "date_of_birth_verified": True}},
    )
    orch = make_orch(db, gw)
    started = orch.start_verification()
    orch.verification.set_verified(True, method="manual")
    with pytest.raises(VerificationDenied):
        orch.handle_redirect_back(started.request_id, state_token(orch))
    assert orch.verification.is_verified() is False


def test_failed_provider_result_keeps_earlier_verification(db):
    gw = MockIdentityGateway(script=["FAILED"])
    orch = make_orch(db, gw)
    started = orch.start_verification()
    orch.verification.set_verified(True, method="manual")
    with pytest.raises(VerificationDenied):
        orch.handle_redirect_back(started.request_id, state_token(orch))
    assert orch.verification.is_verified() is True


def test_submit_failure_blocks_and_retry_works(db):
    gw = MockIdentityGateway(fail_submit=GatewayError(503, "Service unavailable", code="http_error", error_id="e-9"))
    orch = make_orch(db, gw)
    restricted_cart(orch)
    with pytest.raises(CheckoutGatewayError) as exc:
        orch.checkout()
    assert exc.value.http_status == 502
    assert exc.value.to_detail()["gateway"]["error_id"] == "e-9"
    assert exc.value.to_detail()["retryable"] is True
    assert orch.state == CheckoutState.BLOCKED
    assert orch.verification.is_verified() is False
    assert orch.requests.get_pending(orch.session_uuid) is None

    gw.fail_submit = None
    outcome = orch.checkout()
    assert outcome.state == CheckoutState.AWAITING_EXTERNAL_VERIFICATION.value


def test_submit_timeout_blocks_with_504(db):
    gw = MockIdentityGateway(fail_submit=GatewayError(504, "Request timed out", code="timeout"))
    orch = make_orch(db, gw)
    restricted_cart(orch)
    with pytest.raises(CheckoutGatewayError) as exc:
        orch.checkout()
    assert exc.value.http_status == 504
    assert orch.state == CheckoutState.BLOCKED


def test_poll_gateway_error_blocks_without_verifying(db):
    gw = MockIdentityGateway(fail_poll=GatewayError(500, "boom"))
    orch = make_orch(db, gw)
    restricted_cart(orch)
    started = orch.checkout()
    with pytest.raises(CheckoutGatewayError):
        orch.handle_redirect_back(started.request_id, state_token(orch))
    assert orch.state == CheckoutState.BLOCKED
    assert orch.verification.is_verified() is False


def test_polling_is_bounded(db):
    gw = MockIdentityGateway(script=["PENDING"])
    orch = make_orch(db, gw, max_poll_attempts=3)
    restricted_cart(orch)
    started = orch.checkout()
    with pytest.raises(CheckoutGatewayError) as exc:
        orch.handle_redirect_back(started.request_id, state_token(orch))
    assert exc.value.code == "poll_timeout"
    assert gw.count("poll") == 3
    assert orch.state == CheckoutState.BLOCKED
    assert orch.verification.is_verified() is False


def test_zero_poll_attempts_is_honoured(db):
    gw = MockIdentityGateway(script=["APPROVED"])
    orch = make_orch(db, gw, max_poll_attempts=0)
    restricted_cart(orch)
    started = orch.checkout()
    with pytest.raises(CheckoutGatewayError) as exc:
        orch.handle_redirect_back(started.request_id, state_token(orch))
    assert exc.value.code == "poll_timeout"
    assert gw.count("poll") == 0


def test_zero_minimum_age_is_honoured(db):
    orch = CheckoutOrchestrator(
        db, uuid4().hex, MockIdentityGateway(), clock=lambda: NOW, minimum_age=0
    )
    outcome = orch.verify_birthdate(date(2026, 1, 1))
    assert outcome.verified is True
    assert outcome.age == 0


def test_unknown_provider_state_is_never_verified(db):
    gw = MockIdentityGateway(script=["SOMETHING_NEW"])
    orch = make_orch(db, gw, max_poll_attempts=2)
    restricted_cart(orch)
    started = orch.checkout()
    with pytest.raises(CheckoutGatewayError):
        orch.handle_redirect_back(started.request_id, state_token(orch))
    assert orch.verification.is_verified() is False


def test_reset_during_poll_discards_stale_result(db):
    gw = MockIdentityGateway(script=["PENDING", "APPROVED"])
    holder = {}

    def sleep(seconds):
        holder["orch"].reset()

    orch = make_orch(db, gw, sleep=sleep)
    holder["orch"] = orch
    restricted_cart(orch)
    started = orch.checkout()

    outcome = orch.handle_redirect_back(started.request_id, state_token(orch))
    assert outcome.stale is True
    assert gw.count("poll") == 1
    assert orch.verification.is_verified() is False
    assert orch.state == CheckoutState.IDLE
    assert orch.cart.item_count() == 2


def test_new_request_invalidates_previous_one(db):
    gw = MockIdentityGateway(script=["APPROVED"])
    orch = make_orch(db, gw)
    restricted_cart(orch)
    first = orch.checkout()
    first_token = state_token(orch)
    second = orch.checkout()
    assert first.request_id != second.request_id

    with pytest.raises(ProtocolError):
        orch.handle_redirect_back(first.request_id, first_token)
    assert orch.verification.is_verified() is False


# --- redirect-back protocol ------------------------------------------------


def test_redirect_back_missing_request_id_is_protocol_error(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    restricted_cart(orch)
    orch.checkout()
    with pytest.raises(ProtocolError) as exc:
        orch.handle_redirect_back(None, state_token(orch))
    assert exc.value.state == CheckoutState.BLOCKED
    assert orch.state == CheckoutState.BLOCKED
    assert orch.verification.is_verified() is False
    assert gw.count("poll") == 0


def test_redirect_back_missing_state_is_protocol_error(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    restricted_cart(orch)
    started = orch.checkout()
    with pytest.raises(ProtocolError):
        orch.handle_redirect_back(started.request_id, "")


def test_redirect_back_state_mismatch_is_protocol_error(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    restricted_cart(orch)
    started = orch.checkout()
    with pytest.raises(ProtocolError):
        orch.handle_redirect_back(started.request_id, "forged")
    assert gw.count("poll") == 0


def test_protocol_error_keeps_existing_verification(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    orch.verification.set_verified(True)
    with pytest.raises(ProtocolError):
        orch.handle_redirect_back(None, None)
    assert orch.verification.is_verified() is True


def test_poll_once_reports_progress_then_completes(db):
    gw = MockIdentityGateway(script=["PENDING", "APPROVED"])
    orch = make_orch(db, gw)
    restricted_cart(orch)
    orch.checkout()
    first = orch.poll_once()
    assert first.state == CheckoutState.POLLING.value
    assert "PENDING" in first.message
    second = orch.poll_once()
    assert second.resumed_checkout is True
    assert orch.cart.is_empty()


def test_poll_once_without_request_is_protocol_error(db):
    orch = make_orch(db, MockIdentityGateway())
    with pytest.raises(ProtocolError):
        orch.poll_once()


# --- manual fallback -------------------------------------------------------


def test_manual_underage_is_rejected(db):
    orch = make_orch(db, MockIdentityGateway())
    restricted_cart(orch)
    with pytest.raises(VerificationDenied) as exc:
        orch.verify_birthdate(date(2009, 3, 15))
    assert "18 years or older" in exc.value.message
    assert exc.value.extra["age"] == 17
    assert orch.state == CheckoutState.BLOCKED
    assert orch.verification.is_verified() is False


def test_manual_underage_revokes_earlier_verification(db):
    orch = make_orch(db, MockIdentityGateway())
    orch.verification.set_verified(True, method="manual")
    restricted_cart(orch)
    with pytest.raises(VerificationDenied):
        orch.verify_birthdate(date(2010, 1, 1))
    assert orch.verification.is_verified() is False
    orch.acknowledge()
    outcome = orch.checkout()
    assert outcome.state == CheckoutState.AWAITING_EXTERNAL_VERIFICATION.value
    assert outcome.order is None


def test_manual_day_before_18th_birthday_is_rejected(db):
    orch = make_orch(db, MockIdentityGateway())
    with pytest.raises(VerificationDenied):
        orch.verify_birthdate(date(2008, 3, 16))


def test_manual_18th_birthday_is_accepted(db):
    orch = make_orch(db, MockIdentityGateway())
    outcome = orch.verify_birthdate(date(2008, 3, 15))
    assert outcome.verified is True
    assert outcome.age == 18
    assert outcome.state == CheckoutState.IDLE.value


def test_manual_missing_or_future_birthdate_is_validation_error(db):
    orch = make_orch(db, MockIdentityGateway())
    with pytest.raises(CheckoutValidationError):
        orch.verify_birthdate(None)
    with pytest.raises(CheckoutValidationError):
        orch.verify_birthdate(date(2030, 1, 1))
    assert orch.state == CheckoutState.IDLE


def test_manual_success_resumes_deferred_checkout(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    restricted_cart(orch)
    orch.checkout()
    outcome = orch.verify_birthdate(date(1990, 1, 1))
    assert outcome.resumed_checkout is True
    assert outcome.order.age_verified is True
    assert orch.cart.is_empty()
    assert orch.requests.get_pending(orch.session_uuid) is None
    assert gw.count("poll") == 0


# --- reset -----------------------------------------------------------------


def test_reset_clears_verification_and_pending(db):
    gw = MockIdentityGateway()
    orch = make_orch(db, gw)
    orch.verify_birthdate(date(1990, 1, 1))
    restricted_cart(orch)
    orch.verification.reset()
    orch.checkout()
    outcome = orch.reset()
    assert outcome.state == CheckoutState.IDLE.value
    assert outcome.verified is False
    assert outcome.checkout_pending is False
    assert orch.requests.get_pending(orch.session_uuid) is None
    assert orch.cart.item_count() == 2
    assert CART_CHANGED in orch.events.names()


# --- lock files ------------------------------------------------------------


def test_idle_lock_files_are_purged(tmp_path):
    old = tmp_path / "session_old.lock"
    fresh = tmp_path / "session_fresh.lock"
    other = tmp_path / "notes.txt"
    for p in (old, fresh, other):
        p.touch()
    hour_ago = time.time() - 3600
    os.utime(old, (hour_ago, hour_ago))
    os.utime(other, (hour_ago, hour_ago))

    assert purge_stale_lock_files(1800, locks_dir=str(tmp_path)) == 1
    assert not old.exists()
    assert fresh.exists()
    assert other.exists()


def test_purge_without_lock_dir_is_noop(tmp_path):
    assert purge_stale_lock_files(0, locks_dir=str(tmp_path / "missing")) == 0
