from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.pending_verification import PendingVerificationRequest
from app.models.verification_record import VerificationRecord


class VerificationRepository:
    def __init__(self, db: Session):
        self.db = db

    # --- verification records ---

    def get_record(self, session_uuid: str) -> Optional[VerificationRecord]:
        return (
            self.db.query(VerificationRecord)
            .filter(VerificationRecord.session_uuid == session_uuid)
            .first()
        )

    def store_record(self, session_uuid: str, verified_at_ms: int, method: str = None):
        rec = self.get_record(session_uuid)
        if rec is None:
            rec = VerificationRecord(session_uuid=session_uuid)
            self.db.add(rec)
        rec.verified = True
        rec.verified_at_ms = verified_at_ms
        rec.method = method
        self.db.flush()
        return rec

    def delete_record(self, session_uuid: str) -> bool:
        deleted = (
            self.db.query(VerificationRecord)
            .filter(VerificationRecord.session_uuid == session_uuid)
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return bool(deleted)

    # --- pending requests ---

    def get_pending(self, session_uuid: str, fresh: bool = False) -> Optional[PendingVerificationRequest]:
        """
        Return the in-flight request for the session. With fresh=True, expire the
        session state first so a concurrent reset or replacement is observed.
        """
        if fresh:
            self.db.expire_all()
        return (
            self.db.query(PendingVerificationRequest)
            .filter(PendingVerificationRequest.session_uuid == session_uuid)
            .first()
        )

    def replace_pending(
        self,
        session_uuid: str,
        request_id: str,
        request_url: str,
        state_token: str,
        correlates_to_checkout: bool,
    ) -> PendingVerificationRequest:
        self.delete_pending(session_uuid)
        p = PendingVerificationRequest(
            session_uuid=session_uuid,
            request_id=request_id,
            request_url=request_url,
            state_token=state_token,
            correlates_to_checkout=correlates_to_checkout,
        )
        self.db.add(p)
        self.db.flush()
        return p

    def delete_pending(self, session_uuid: str) -> bool:
        deleted = (
            self.db.query(PendingVerificationRequest)
            .filter(PendingVerificationRequest.session_uuid == session_uuid)
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return bool(deleted)

    def purge_abandoned(self, older_than: datetime) -> List[str]:
        """Delete pending requests submitted before `older_than`; return their session ids."""
        stale = (
            self.db.query(PendingVerificationRequest)
            .filter(PendingVerificationRequest.submitted_at < older_than)
            .all()
        )
        sessions = []
        for p in stale:
            sessions.append(p.session_uuid)
            self.db.delete(p)
        self.db.flush()
        return sessions
