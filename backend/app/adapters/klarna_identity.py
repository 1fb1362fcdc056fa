import logging
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx

from app.adapters.identity_gateway import (
    GatewayError,
    IdentityGateway,
    SubmittedRequest,
    VerificationStatus,
    parse_identity_status,
)

log = logging.getLogger(__name__)

DEFAULT_PROFILE_SCOPES = [
    "profile:name",
    "profile:date_of_birth",
    "profile:email",
    "profile:phone",
    "profile:billing_address",
    "profile:customer_id",
]


class BasicAuthStrategy:
    def __init__(self, client_id: str, client_secret: str):
        self.client_id = client_id
        self.client_secret = client_secret

    def auth(self) -> httpx.Auth:
        return httpx.BasicAuth(self.client_id, self.client_secret)

    def headers(self) -> Dict[str, str]:
        return {}


class BearerAuthStrategy:
    def __init__(self, token: str):
        self.token = token

    def auth(self) -> Optional[httpx.Auth]:
        return None

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


def build_auth_strategy(scheme: str, client_id: Optional[str], client_secret: Optional[str]):
    scheme = (scheme or "basic").lower()
    if scheme == "basic":
        return BasicAuthStrategy(client_id or "", client_secret or "")
    if scheme == "bearer":
        return BearerAuthStrategy(client_secret or "")
    raise ValueError(f"Unsupported Klarna auth scheme: {scheme}")


class KlarnaIdentityGateway(IdentityGateway):
    """
    HTTP adapter for the Klarna Identity API.

    submit_verification_request POSTs a new identity request and expects
    identity_request_id / identity_request_url back; poll_verification_status GETs
    the request by id. Every failure is raised as GatewayError so the caller can
    surface it without touching verification state.
    """

    name = "klarna"

    def __init__(
        self,
        base_url: str,
        account_id: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        return_url: str,
        auth_scheme: str = "basic",
        request_path: str = "/v2/accounts/{account_id}/identity/requests",
        environment: str = "sandbox",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.account_id = account_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.return_url = return_url.rstrip("/")
        self.environment = environment
        self.request_path = request_path
        self.timeout = timeout
        self.strategy = build_auth_strategy(auth_scheme, client_id, client_secret)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.BaseTransport] = None):
        return cls(
            base_url=settings.KLARNA_BASE_URL,
            account_id=settings.KLARNA_ACCOUNT_ID,
            client_id=settings.KLARNA_CLIENT_ID,
            client_secret=settings.KLARNA_CLIENT_SECRET,
            return_url=settings.KLARNA_RETURN_URL,
            auth_scheme=settings.KLARNA_AUTH_SCHEME,
            request_path=settings.KLARNA_IDENTITY_REQUEST_PATH,
            environment=settings.KLARNA_ENVIRONMENT,
            timeout=settings.IDENTITY_GATEWAY_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.account_id)

    def _requests_url(self) -> str:
        return self.base_url + self.request_path.format(account_id=quote(self.account_id or "", safe=""))

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            auth=self.strategy.auth(),
            headers={"Content-Type": "application/json", **self.strategy.headers()},
            transport=self._transport,
        )

    def _send(self, method: str, url: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.configured:
            raise GatewayError(
                500,
                "Klarna credentials not configured. Set KLARNA_CLIENT_ID, KLARNA_CLIENT_SECRET and KLARNA_ACCOUNT_ID.",
                code="not_configured",
            )
        try:
            with self._client() as client:
                response = client.request(method, url, json=json)
        except httpx.TimeoutException:
            log.error("Klarna %s %s timed out after %ss", method, url, self.timeout)
            raise GatewayError(
                504,
                "Request timed out. Please check your connection and try again.",
                code="timeout",
            )
        except httpx.HTTPError as e:
            log.error("Klarna %s %s failed: %s", method, url, e)
            raise GatewayError(502, f"Could not reach identity provider: {e}", code="network_error")

        try:
            data = response.json()
        except ValueError:
            raise GatewayError(
                502,
                f"Server error: {response.status_code} - {response.text[:100]}",
                code="malformed_response",
            )

        if response.is_error:
            body = data if isinstance(data, dict) else {}
            err = GatewayError(
                response.status_code,
                body.get("error_message")
                or body.get("error")
                or f"Identity provider returned HTTP {response.status_code}",
                code=body.get("error_code") or "http_error",
                error_id=body.get("error_id"),
                error_type=body.get("error_type"),
                hint=body.get("hint"),
                details=body.get("details"),
            )
            log.error(
                "Klarna %s %s -> %s error_id=%s code=%s",
                method, url, response.status_code, err.error_id, err.code,
            )
            raise err

        if not isinstance(data, dict):
            raise GatewayError(502, "Unexpected response shape from identity provider", code="malformed_response")
        return data

    def submit_verification_request(self, state_token: str) -> SubmittedRequest:
        redirect = f"{self.return_url}/api/verification/callback?" + urlencode({"state": state_token})
        data = self._send(
            "POST",
            self._requests_url(),
            json={
                "request_customer_profile": DEFAULT_PROFILE_SCOPES,
                "redirect_url": redirect,
                "state": state_token,
            },
        )
        request_id = data.get("identity_request_id")
        request_url = data.get("identity_request_url")
        if not request_id or not request_url:
            raise GatewayError(
                502,
                "Identity request URL not received from provider",
                code="malformed_response",
                details=data,
            )
        log.info("Created Klarna identity request %s", request_id)
        return SubmittedRequest(request_id=request_id, request_url=request_url)

    def poll_verification_status(self, request_id: str) -> VerificationStatus:
        url = f"{self._requests_url()}/{quote(request_id, safe='')}"
        data = self._send("GET", url)
        return parse_identity_status(request_id, data)

    def health_check(self) -> bool:
        return self.configured

    def public_config(self) -> Dict[str, Any]:
        return {
            "gateway": self.name,
            "client_id": self.client_id,
            "environment": self.environment,
        }
