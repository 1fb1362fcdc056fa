import time
from typing import Dict, List, Optional
from uuid import uuid4

from app.adapters.identity_gateway import (
    GatewayError,
    IdentityGateway,
    SubmittedRequest,
    VerificationStatus,
    parse_identity_status,
)

DEFAULT_PROFILE = {
    "name": {"given_name": "Alex", "family_name": "Example", "name_verified": True},
    "date_of_birth": {"date_of_birth": "1990-04-12", "date_of_birth_verified": True},
    "email": {"email": "alex@example.com", "email_verified": True},
}


class MockIdentityGateway(IdentityGateway):
    """
    Scripted identity gateway for local development and tests.

    Each submitted request plays back `script` one state per poll; the last state
    repeats once the script is exhausted. Calls are recorded in `calls` as
    ("submit", state_token) / ("poll", request_id) tuples. Both the call log and
    the per-request cursors keep only the newest `history_limit` entries, since
    the default gateway lives for the whole process.
    """

    name = "mock"

    def __init__(
        self,
        script: Optional[List[str]] = None,
        request_id: Optional[str] = None,
        profile: Optional[Dict] = DEFAULT_PROFILE,
        fail_submit: Optional[GatewayError] = None,
        fail_poll: Optional[GatewayError] = None,
        base_url: str = "https://identity.mock.local/verify",
        delay_ms: int = 0,
        history_limit: int = 1000,
    ):
        self.script = list(script or ["APPROVED"])
        self.request_id = request_id
        self.profile = profile
        self.fail_submit = fail_submit
        self.fail_poll = fail_poll
        self.base_url = base_url
        self.delay_seconds = delay_ms / 1000.0
        self.history_limit = history_limit
        self.calls: List[tuple] = []
        self._cursor: Dict[str, int] = {}

    def submit_verification_request(self, state_token: str) -> SubmittedRequest:
        self._record("submit", state_token)
        time.sleep(self.delay_seconds)
        if self.fail_submit is not None:
            raise self.fail_submit
        request_id = self.request_id or f"mock-idr-{uuid4().hex[:12]}"
        self._cursor[request_id] = 0
        while len(self._cursor) > self.history_limit:
            # dicts keep insertion order; drop the oldest request
            del self._cursor[next(iter(self._cursor))]
        return SubmittedRequest(
            request_id=request_id,
            request_url=f"{self.base_url}?identity_request_id={request_id}&state={state_token}",
        )

    def poll_verification_status(self, request_id: str) -> VerificationStatus:
        self._record("poll", request_id)
        time.sleep(self.delay_seconds)
        if self.fail_poll is not None:
            raise self.fail_poll
        idx = self._cursor.get(request_id, 0)
        state = self.script[min(idx, len(self.script) - 1)]
        if request_id in self._cursor:
            self._cursor[request_id] = idx + 1
        payload = {"identity_request_id": request_id, "state": state}
        if state in ("APPROVED", "COMPLETED") and self.profile:
            payload["state_context"] = {"klarna_customer": {"customer_profile": self.profile}}
        return parse_identity_status(request_id, payload)

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c[0] == kind)

    def _record(self, kind: str, value: str) -> None:
        self.calls.append((kind, value))
        if len(self.calls) > self.history_limit:
            del self.calls[: len(self.calls) - self.history_limit]
