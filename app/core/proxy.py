"""
Vendor Proxy

One outbound call per callable: the handler builds a vendor request body, the
VendorClient sends it with the profile's credential strategy and timeout, and
the JSON response comes back verbatim.

Provider profiles:
    openai        bearer key, 90s
    vision        ?key= query parameter, 30s
    deepseek      bearer key, 300s, degrades to a canned completion on failure
    gemini        Google Cloud access token, 90s
    openai-ocr    bearer key, 45s

Non-2xx responses are mapped onto callable error kinds with the vendor body
attached; network failures surface as internal errors with diagnostics.
"""

from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
import google.auth
import google.auth.transport.requests

from app.core.errors import CallableError, InternalError, kind_for_vendor_status

logger = logging.getLogger("functions.proxy")


class AuthStrategy(str, Enum):
    """How the credential travels to the vendor."""
    BEARER = "bearer"
    QUERY_KEY = "query_key"
    GOOGLE_CLOUD = "google_cloud"


@dataclass(frozen=True)
class VendorProfile:
    """Static description of one vendor endpoint."""
    name: str
    label: str
    url: str
    auth: AuthStrategy = AuthStrategy.BEARER
    timeout_seconds: float = 90.0
    degrade_on_error: bool = False
    fallback: Optional[Callable[[str], Dict[str, Any]]] = None

    def with_url(self, url: str) -> "VendorProfile":
        return VendorProfile(
            name=self.name,
            label=self.label,
            url=url,
            auth=self.auth,
            timeout_seconds=self.timeout_seconds,
            degrade_on_error=self.degrade_on_error,
            fallback=self.fallback,
        )


@dataclass
class VendorResponse:
    """Parsed vendor reply."""
    status_code: int
    data: Any
    latency_ms: int = 0


# =============================================================================
# GOOGLE CLOUD ACCESS TOKENS
# =============================================================================

CLOUD_PLATFORM_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]


class GoogleAccessTokenProvider:
    """Application default credentials, refreshed when stale."""

    def __init__(self, scopes=None):
        self.scopes = scopes or CLOUD_PLATFORM_SCOPES
        self._credentials = None

    def _token_sync(self) -> str:
        if self._credentials is None:
            self._credentials, _ = google.auth.default(scopes=self.scopes)
        if not self._credentials.valid:
            self._credentials.refresh(google.auth.transport.requests.Request())
        return self._credentials.token

    async def get_token(self) -> str:
        return await asyncio.to_thread(self._token_sync)


# =============================================================================
# CLIENT
# =============================================================================

def _diagnostics(error: str, status: Optional[int], data: Any, code: Optional[str]) -> Dict[str, Any]:
    return {
        "error": error,
        "status": status,
        "data": data,
        "code": code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]


class VendorClient:
    """Sends one request to a vendor and maps its failures."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[GoogleAccessTokenProvider] = None,
    ):
        # HTTP client - created lazily
        self._client = client
        self.token_provider = token_provider or GoogleAccessTokenProvider()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(300.0, connect=10.0),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _prepare_auth(self, profile: VendorProfile, credential: Optional[str]):
        headers = {"Content-Type": "application/json"}
        params = {}

        if profile.auth == AuthStrategy.BEARER:
            headers["Authorization"] = f"Bearer {credential}"
        elif profile.auth == AuthStrategy.QUERY_KEY:
            params["key"] = credential
        elif profile.auth == AuthStrategy.GOOGLE_CLOUD:
            token = credential or await self.token_provider.get_token()
            headers["Authorization"] = f"Bearer {token}"

        return headers, params

    async def call(
        self,
        profile: VendorProfile,
        body: Optional[Dict[str, Any]] = None,
        credential: Optional[str] = None,
        method: str = "POST",
    ) -> VendorResponse:
        """Send the request; raise a CallableError on any failure."""
        headers, params = await self._prepare_auth(profile, credential)
        client = await self._get_client()

        started = time.monotonic()
        try:
            response = await client.request(
                method,
                profile.url,
                headers=headers,
                params=params or None,
                json=body if method.upper() != "GET" else None,
                timeout=profile.timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.error(f"{profile.label} request failed: {type(e).__name__}: {e}")
            raise InternalError(
                f"{profile.label} API request failed: {e}",
                _diagnostics(str(e), None, None, type(e).__name__),
            ) from e

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"{profile.label} responded {response.status_code} in {latency_ms}ms")

        if not response.is_success:
            data = _response_body(response)
            logger.error(f"{profile.label} error {response.status_code}: {data}")
            raise CallableError(
                f"{profile.label} API error: {response.status_code}",
                _diagnostics(
                    f"HTTP {response.status_code}",
                    response.status_code,
                    data,
                    None,
                ),
                kind=kind_for_vendor_status(response.status_code),
            )

        try:
            data = response.json()
        except ValueError as e:
            raise InternalError(
                f"{profile.label} returned a non-JSON response",
                _diagnostics(str(e), response.status_code, response.text[:2000], "invalid_json"),
            ) from e

        return VendorResponse(status_code=response.status_code, data=data, latency_ms=latency_ms)

    async def dispatch(
        self,
        profile: VendorProfile,
        body: Optional[Dict[str, Any]] = None,
        credential: Optional[str] = None,
        method: str = "POST",
        post_process: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """
        Call the vendor and return its JSON.

        Degrading profiles turn every vendor failure into their fallback
        payload instead of raising.
        """
        try:
            result = await self.call(profile, body, credential, method)
        except CallableError as e:
            if not (profile.degrade_on_error and profile.fallback):
                raise
            logger.warning(f"{profile.label} failed, returning fallback: {e.message}")
            return profile.fallback(e.message)

        data = result.data
        if post_process is not None:
            data = post_process(data)
        return data
