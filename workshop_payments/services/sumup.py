"""
SumUp integration.

Handles OAuth client-credentials tokens, creating hosted checkouts and
reading checkout status back. One SumUpService is built per process from
settings and shared by the request handlers.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Type

import httpx

from ..config import Settings
from ..schemas import CheckoutResource
from .exceptions import (
    AuthenticationError,
    CheckoutCreationError,
    CheckoutLookupError,
    SumUpError,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.sumup.com"
LEGACY_PAYMENT_URL = "https://gateway.sumup.com/gateway/ecom/card/v2/pay/{checkout_id}"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPhase(str, Enum):
    NO_TOKEN = "no_token"
    VALID = "valid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TokenState:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def phase(self, now: datetime) -> TokenPhase:
        if not self.access_token or self.expires_at is None:
            return TokenPhase.NO_TOKEN
        if now < self.expires_at:
            return TokenPhase.VALID
        return TokenPhase.EXPIRED

    def issue(self, payload: dict, issued_at: datetime, grant: str) -> "TokenState":
        """Return the state after a successful token exchange.

        A refresh grant that does not rotate the refresh token keeps the old one;
        a client-credentials grant only keeps what it was given.
        Raises ValueError when the payload carries no usable lifetime, so a
        token that is already expired is never cached.
        """
        access_token = payload["access_token"]
        if not access_token:
            raise ValueError("empty access_token")
        expires_in = int(payload["expires_in"])
        if expires_in <= 0:
            raise ValueError(f"non-positive expires_in: {expires_in}")

        refresh_token = payload.get("refresh_token")
        if not refresh_token and grant == "refresh_token":
            refresh_token = self.refresh_token
        return TokenState(
            access_token=access_token,
            refresh_token=refresh_token or None,
            expires_at=issued_at + timedelta(seconds=expires_in),
        )


async def _send(
    http: httpx.AsyncClient,
    method: str,
    url: str,
    error_cls: Type[SumUpError],
    action: str,
    retries: int,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying network failures only.

    HTTP responses are returned whatever their status; the caller decides
    what a rejection means.
    """
    attempt = 0
    while True:
        try:
            return await http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= retries:
                logger.error(f"SumUp unreachable while trying to {action}: {e!r}")
                raise error_cls(f"Failed to {action}: SumUp unreachable ({e.__class__.__name__})") from e
            attempt += 1
            logger.warning(f"Network error while trying to {action} ({e!r}), retry {attempt}/{retries}")


class TokenManager:
    """Keeps one bearer token for the SumUp API and renews it when it runs out."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http: httpx.AsyncClient,
        clock: Clock = _utcnow,
        max_retries: int = 1,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.http = http
        self.clock = clock
        self.max_retries = max_retries
        self.state = TokenState()

    async def get_access_token(self) -> str:
        if self.state.phase(self.clock()) is TokenPhase.VALID:
            return self.state.access_token

        if self.state.refresh_token:
            token = await self._refresh()
            if token:
                return token

        return await self._client_credentials()

    async def _refresh(self) -> Optional[str]:
        form = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.state.refresh_token,
        }
        try:
            resp = await self.http.post("/token", data=form)
        except httpx.TransportError as e:
            logger.warning(f"Failed to refresh SumUp token, getting new one: {e!r}")
            return None

        if resp.is_error:
            logger.warning(f"Failed to refresh SumUp token ({resp.status_code} {resp.reason_phrase}), getting new one")
            return None

        try:
            payload = resp.json()
            self.state = self.state.issue(payload, self.clock(), "refresh_token")
        except (ValueError, KeyError, TypeError):
            logger.warning("SumUp returned an unusable refresh response, getting new token")
            return None
        return self.state.access_token

    async def _client_credentials(self) -> str:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        resp = await _send(
            self.http, "POST", "/token", AuthenticationError, "get access token", self.max_retries, data=form
        )
        if resp.is_error:
            raise AuthenticationError(
                f"Failed to get access token: {resp.reason_phrase}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            payload = resp.json()
            self.state = TokenState().issue(payload, self.clock(), "client_credentials")
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError(
                "Failed to get access token: malformed token response",
                status_code=resp.status_code,
                body=resp.text,
            ) from e

        logger.info("Obtained new SumUp access token")
        return self.state.access_token


class SumUpClient:
    """Checkout operations against /v0.1/checkouts."""

    def __init__(
        self,
        merchant_code: str,
        redirect_url: str,
        tokens: TokenManager,
        http: httpx.AsyncClient,
        max_retries: int = 1,
    ):
        self.merchant_code = merchant_code
        self.redirect_url = redirect_url
        self.tokens = tokens
        self.http = http
        self.max_retries = max_retries

    async def _auth_headers(self) -> dict:
        token = await self.tokens.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    async def create_checkout(
        self, reference: str, amount: int, currency: str, description: str
    ) -> CheckoutResource:
        payload = {
            "checkout_reference": reference,
            "amount": amount,
            "currency": currency,
            "description": description,
            "merchant_code": self.merchant_code,
            "redirect_url": self.redirect_url,
            "hosted_checkout": {"enabled": True},
        }
        headers = await self._auth_headers()
        resp = await _send(
            self.http, "POST", "/v0.1/checkouts", CheckoutCreationError, "create checkout",
            self.max_retries, json=payload, headers=headers,
        )
        if resp.is_error:
            raise CheckoutCreationError(
                f"Failed to create checkout: {resp.reason_phrase} - {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        checkout = self._parse(resp, CheckoutCreationError)
        logger.info(f"Created SumUp checkout {checkout.id} for reference {reference}")
        return checkout

    async def get_checkout(self, checkout_id: str) -> CheckoutResource:
        headers = await self._auth_headers()
        resp = await _send(
            self.http, "GET", f"/v0.1/checkouts/{checkout_id}", CheckoutLookupError, "get checkout",
            self.max_retries, headers=headers,
        )
        if resp.is_error:
            raise CheckoutLookupError(
                f"Failed to get checkout: {resp.reason_phrase} - {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        return self._parse(resp, CheckoutLookupError)

    async def list_checkouts(self, reference: Optional[str] = None) -> List[CheckoutResource]:
        params = {"checkout_reference": reference} if reference else None
        headers = await self._auth_headers()
        resp = await _send(
            self.http, "GET", "/v0.1/checkouts", CheckoutLookupError, "list checkouts",
            self.max_retries, params=params, headers=headers,
        )
        if resp.is_error:
            raise CheckoutLookupError(
                f"Failed to list checkouts: {resp.reason_phrase} - {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            return [CheckoutResource.model_validate(item) for item in resp.json()]
        except (ValueError, TypeError) as e:
            raise CheckoutLookupError(
                "Failed to list checkouts: unexpected response", status_code=resp.status_code, body=resp.text
            ) from e

    @staticmethod
    def _parse(resp: httpx.Response, error_cls: Type[SumUpError]) -> CheckoutResource:
        try:
            return CheckoutResource.model_validate(resp.json())
        except ValueError as e:
            raise error_cls(
                "Unexpected checkout payload from SumUp", status_code=resp.status_code, body=resp.text
            ) from e

    @staticmethod
    def get_hosted_checkout_url(checkout: CheckoutResource) -> Optional[str]:
        return checkout.hosted_checkout_url or None

    @staticmethod
    def generate_payment_link(checkout_id: str) -> str:
        # only used when SumUp did not hand back a hosted checkout url
        return LEGACY_PAYMENT_URL.format(checkout_id=checkout_id)


class SumUpService:
    """Token manager and checkout client sharing one HTTP connection pool."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        merchant_code: str,
        api_base: str = DEFAULT_API_BASE,
        redirect_url: str = "",
        timeout: float = 10.0,
        max_retries: int = 1,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = _utcnow,
    ):
        self.http = httpx.AsyncClient(base_url=api_base, timeout=timeout, transport=transport)
        self.tokens = TokenManager(client_id, client_secret, self.http, clock=clock, max_retries=max_retries)
        self.checkouts = SumUpClient(merchant_code, redirect_url, self.tokens, self.http, max_retries=max_retries)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> Optional["SumUpService"]:
        if not settings.sumup_configured:
            return None
        return cls(
            settings.sumup_client_id,
            settings.sumup_client_secret,
            settings.sumup_merchant_code,
            api_base=settings.sumup_api_base,
            redirect_url=settings.sumup_redirect_url,
            timeout=settings.sumup_timeout,
            max_retries=settings.sumup_max_retries,
            **kwargs,
        )

    async def aclose(self):
        await self.http.aclose()
