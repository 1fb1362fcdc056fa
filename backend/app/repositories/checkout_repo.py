from sqlalchemy.orm import Session

from app.models.checkout_session import CheckoutSession


class CheckoutSessionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_or_create(self, session_uuid: str) -> CheckoutSession:
        s = (
            self.db.query(CheckoutSession)
            .filter(CheckoutSession.session_uuid == session_uuid)
            .first()
        )
        if s is None:
            s = CheckoutSession(session_uuid=session_uuid, state="IDLE", checkout_pending=False)
            self.db.add(s)
            self.db.flush()
        return s

    def update(self, session: CheckoutSession, **fields) -> CheckoutSession:
        for k, v in fields.items():
            setattr(session, k, v)
        self.db.flush()
        return session
