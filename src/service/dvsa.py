"""DVSA MOT History API client.

Docs: https://documentation.history.mot.api.gov.uk/
Auth is an OAuth2 client-credentials exchange against the token URL DVSA
issues (Microsoft Entra ID, tenant included); every lookup also carries the
X-API-Key header.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol
from urllib.parse import quote

import httpx

from motcheck.errors import (
    AccessDeniedError,
    AuthError,
    ConfigurationError,
    InvalidResponseError,
    NotFoundError,
    RateLimitedError,
    UpstreamError,
    UpstreamUnavailableError,
)
from motcheck.fixtures import fixture_record
from motcheck.registration import clean_registration, mask_registration
from service.settings import ServiceSettings

logger = logging.getLogger(__name__)


class RecordSource(Protocol):
    async def fetch(self, registration: str) -> dict[str, Any]: ...

    def status(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class DvsaCredentials:
    client_id: str
    client_secret: str
    token_url: str
    api_key: str

    @property
    def complete(self) -> bool:
        return all((self.client_id, self.client_secret, self.token_url, self.api_key))


class TokenCache:
    """Process-wide bearer token holder.

    Starts empty, is replaced on every successful authentication and is
    checked for expiry on every fetch. Refreshes happen under ``lock``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self.lock = asyncio.Lock()

    def get(self) -> str | None:
        if self._token is not None and self._expires_at > self._clock():
            return self._token
        return None

    def set(self, token: str, expires_in: float, safety_margin: float) -> None:
        self._token = token
        self._expires_at = self._clock() + max(0.0, expires_in - safety_margin)

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0


_token_cache = TokenCache()


_STATUS_ERRORS: dict[int, Callable[[str], Exception]] = {
    401: lambda reg: AuthError("API authentication failed. Please check your credentials."),
    403: lambda reg: AccessDeniedError("API access denied. Please check your API key and permissions."),
    404: lambda reg: NotFoundError(f"Vehicle not found: {reg}"),
    429: lambda reg: RateLimitedError("API rate limit exceeded. Please try again later."),
}


class DvsaClient:
    def __init__(
        self,
        credentials: DvsaCredentials,
        base_url: str = "https://history.mot.api.gov.uk",
        scope: str = "https://tapi.dvsa.gov.uk/.default",
        timeout: float = 10.0,
        token_safety_margin: int = 600,
        token_cache: TokenCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.scope = scope
        self.timeout = timeout
        self.token_safety_margin = token_safety_margin
        self.token_cache = token_cache or _token_cache
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: ServiceSettings, **kwargs: Any) -> "DvsaClient":
        creds = DvsaCredentials(
            client_id=settings.dvsa_client_id,
            client_secret=settings.dvsa_client_secret,
            token_url=settings.dvsa_token_url,
            api_key=settings.dvsa_api_key,
        )
        return cls(
            creds,
            base_url=settings.dvsa_api_base_url,
            scope=settings.dvsa_scope,
            timeout=settings.dvsa_timeout_seconds,
            token_safety_margin=settings.dvsa_token_safety_margin_seconds,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return self.credentials.complete

    def status(self) -> dict[str, Any]:
        return {
            "source": "dvsa",
            "configured": self.configured,
            "token_cached": self.token_cache.get() is not None,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _authenticate(self) -> str:
        try:
            async with self._client() as client:
                resp = await client.post(
                    self.credentials.token_url,
                    data={
                        "grant_type": "client_credentials",
                        "client_id": self.credentials.client_id,
                        "client_secret": self.credentials.client_secret,
                        "scope": self.scope,
                    },
                )
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailableError("Timed out authenticating with the DVSA API") from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"Could not reach the DVSA token endpoint: {exc}") from exc

        if not resp.is_success:
            logger.error("DVSA auth error: %s %s", resp.status_code, resp.text[:200])
            raise AuthError(f"Authentication failed: {resp.status_code} {resp.reason_phrase}")
        try:
            data = resp.json()
            token = data["access_token"]
            expires_in = float(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthError("Authentication failed: malformed token response") from exc

        self.token_cache.set(token, expires_in, self.token_safety_margin)
        return token

    async def access_token(self) -> str:
        token = self.token_cache.get()
        if token is not None:
            return token
        async with self.token_cache.lock:
            token = self.token_cache.get()
            if token is not None:
                return token
            logger.info("Requesting new DVSA access token")
            return await self._authenticate()

    async def fetch(self, registration: str) -> dict[str, Any]:
        if not self.configured:
            raise ConfigurationError(
                "DVSA API credentials not configured. Please provide DVSA_CLIENT_ID, "
                "DVSA_CLIENT_SECRET, DVSA_TOKEN_URL, and DVSA_API_KEY environment variables."
            )

        reg = clean_registration(registration)
        token = await self.access_token()
        url = f"{self.base_url}/v1/trade/vehicles/registration/{quote(reg)}"
        logger.info("Fetching MOT history from DVSA for %s", mask_registration(reg))

        t0 = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "X-API-Key": self.credentials.api_key,
                        "Accept": "application/json",
                    },
                )
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailableError(
                f"DVSA API did not respond within {self.timeout:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"Could not reach the DVSA API: {exc}") from exc

        if not resp.is_success:
            logger.warning("DVSA API error %s for %s", resp.status_code, mask_registration(reg))
            if resp.status_code == 401:
                self.token_cache.clear()
            factory = _STATUS_ERRORS.get(resp.status_code)
            if factory is not None:
                raise factory(reg)
            raise UpstreamError(f"API request failed: {resp.status_code} {resp.reason_phrase}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamError("DVSA API returned a non-JSON body") from exc

        if not payload:
            raise UpstreamError(f"No data found for vehicle: {reg}")
        vehicle = payload[0] if isinstance(payload, list) else payload
        if not isinstance(vehicle, dict):
            raise InvalidResponseError("Invalid vehicle data received from DVSA API")
        if not (vehicle.get("registration") and vehicle.get("make") and vehicle.get("model")):
            raise InvalidResponseError("Invalid vehicle data received from DVSA API")

        logger.info(
            "Fetched MOT history for %s (%s %s) in %.0f ms",
            mask_registration(reg), vehicle["make"], vehicle["model"],
            (time.monotonic() - t0) * 1000,
        )
        return vehicle


class FixtureRecordSource:
    """Serves the bundled fixture record for every registration.

    Only used when MOT_DATA_SOURCE=fixture; never substituted for a
    failing DVSA lookup.
    """

    def status(self) -> dict[str, Any]:
        return {"source": "fixture", "configured": True, "token_cached": False}

    async def fetch(self, registration: str) -> dict[str, Any]:
        reg = clean_registration(registration)
        logger.info("Serving fixture MOT history for %s", mask_registration(reg))
        return fixture_record(reg)


def build_record_source(settings: ServiceSettings) -> RecordSource:
    source = settings.mot_data_source.strip().lower()
    if source == "fixture":
        return FixtureRecordSource()
    if source == "dvsa":
        return DvsaClient.from_settings(settings)
    raise ValueError(f"Unknown MOT_DATA_SOURCE: {settings.mot_data_source!r}")
