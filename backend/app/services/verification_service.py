import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.repositories.verification_repo import VerificationRepository
from app.services.events import VERIFICATION_CHANGED, SessionEvents

log = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def calculate_age(birth_date: date, today: date) -> int:
    """Whole years between birth_date and today, by calendar (not days / 365)."""
    age = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


class VerificationState:
    """
    Age-verification flag for one session with a rolling expiry window.

    Expiry is lazy: is_verified() clears a stale record when it sees one. Any
    storage failure is treated as "not verified".
    """

    def __init__(
        self,
        db: Session,
        session_uuid: str,
        clock: Callable[[], datetime] = utc_now,
        events: Optional[SessionEvents] = None,
        expiry_hours: Optional[int] = None,
    ):
        self.db = db
        self.session_uuid = session_uuid
        self.clock = clock
        self.events = events
        self.repo = VerificationRepository(db)
        self.expiry = timedelta(
            hours=expiry_hours if expiry_hours is not None else settings.VERIFICATION_EXPIRY_HOURS
        )

    def _fresh(self, verified_at_ms: int) -> bool:
        age_ms = to_epoch_millis(self.clock()) - verified_at_ms
        return age_ms < self.expiry.total_seconds() * 1000

    def is_verified(self) -> bool:
        try:
            rec = self.repo.get_record(self.session_uuid)
            if rec is None:
                return False
            if rec.verified and rec.verified_at_ms is not None and self._fresh(rec.verified_at_ms):
                return True
            log.info("Verification for session %s expired; clearing", self.session_uuid)
            self.repo.delete_record(self.session_uuid)
            self.db.commit()
            self._notify(False, reason="expired")
            return False
        except SQLAlchemyError as e:
            log.warning("Verification storage unavailable, failing closed: %s", e)
            self._rollback()
            return False

    def expires_at(self) -> Optional[datetime]:
        if not self.is_verified():
            return None
        rec = self.repo.get_record(self.session_uuid)
        verified_at = datetime.fromtimestamp(rec.verified_at_ms / 1000, tz=timezone.utc)
        return verified_at + self.expiry

    def set_verified(self, verified: bool, method: Optional[str] = None) -> None:
        try:
            if verified:
                self.repo.store_record(self.session_uuid, to_epoch_millis(self.clock()), method=method)
            else:
                self.repo.delete_record(self.session_uuid)
            self.db.commit()
        except SQLAlchemyError as e:
            log.warning("Could not persist verification=%s for session %s: %s", verified, self.session_uuid, e)
            self._rollback()
            return
        log.info("Session %s verification set to %s (%s)", self.session_uuid, verified, method or "-")
        self._notify(verified, reason=method or ("granted" if verified else "cleared"))

    def reset(self) -> None:
        self.set_verified(False, method="reset")

    def _notify(self, verified: bool, reason: str):
        if self.events is not None:
            self.events.publish(VERIFICATION_CHANGED, {"verified": verified, "reason": reason})

    def _rollback(self):
        try:
            self.db.rollback()
        except SQLAlchemyError:
            pass
