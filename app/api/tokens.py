"""
Temporary Token Callables

getTemporaryApiToken hands a signed-in user a 15 minute token; apiProxy
forwards a request to a vendor on the strength of that token's permissions.
"""

from __future__ import annotations
import logging

from fastapi import APIRouter, Depends

from app.api.auth import Caller, require_auth
from app.api.gateway import (
    DEEPSEEK_BASE_URL,
    MISTRAL_BASE_URL,
    OPENAI_BASE_URL,
    endpoint_path,
    vendor_client,
)
from app.core.callable import CallableRequest, CallableResponse, CallableRoute
from app.core.credentials import credentials
from app.core.errors import InvalidArgumentError, PermissionDeniedError
from app.core.proxy import VendorProfile
from app.core import tokens
from app.core.validation import require_fields

logger = logging.getLogger("functions.token_proxy")

router = APIRouter(
    prefix="/callable",
    tags=["Tokens"],
    route_class=CallableRoute,
    default_response_class=CallableResponse,
)

TEMPORARY_TOKEN_TTL_SECONDS = 15 * 60

TEMPORARY_TOKEN_CLAIMS = {
    "permissions": {"deepseek": True, "openai": True, "mistral": True},
    "limits": {"requestsPerMinute": 10},
}

TOKEN_PROXY_PROFILES = {
    "openai": VendorProfile(name="openai", label="OpenAI", url=OPENAI_BASE_URL, timeout_seconds=90.0),
    "deepseek": VendorProfile(name="deepseek", label="DeepSeek", url=DEEPSEEK_BASE_URL, timeout_seconds=300.0),
    "mistral": VendorProfile(name="mistral", label="Mistral", url=MISTRAL_BASE_URL, timeout_seconds=90.0),
}

ALLOWED_METHODS = {"GET", "POST"}


@router.post("/getTemporaryApiToken")
async def get_temporary_api_token(caller: Caller = Depends(require_auth)):
    token = tokens.token_service.issue(
        caller.uid,
        TEMPORARY_TOKEN_CLAIMS,
        expires_in=TEMPORARY_TOKEN_TTL_SECONDS,
    )
    logger.info(f"Issued temporary API token for {caller.uid}")

    return {
        "success": True,
        "token": token,
        "expiresIn": TEMPORARY_TOKEN_TTL_SECONDS,
    }


@router.post("/apiProxy")
async def api_proxy(envelope: CallableRequest, caller: Caller = Depends(require_auth)):
    """
    Forward {body} to {provider base}/{endpoint} with {method}.

    The token decides which providers may be reached; apiType defaults to
    deepseek.
    """
    request = require_fields(envelope.as_dict(), ("token", "endpoint", "method"))

    claims = tokens.token_service.verify(request["token"])
    if claims is None:
        raise PermissionDeniedError("Invalid or expired token")

    api_type = request.get("apiType") or "deepseek"
    if not (claims.get("permissions") or {}).get(api_type):
        raise PermissionDeniedError(f"Token does not grant access to {api_type}")

    profile = TOKEN_PROXY_PROFILES.get(api_type)
    if profile is None:
        raise InvalidArgumentError(f"Unsupported apiType: {api_type}", {"received": api_type})

    method = str(request["method"]).upper()
    if method not in ALLOWED_METHODS:
        raise InvalidArgumentError(f"Unsupported method: {method}", {"received": request["method"]})

    api_key = credentials.for_provider(api_type)
    target = profile.with_url(f"{profile.url}/{endpoint_path(request['endpoint'])}")

    logger.info(f"Token proxy {method} {target.url} for {claims.get('sub')} (caller {caller.uid})")

    body = request.get("body")
    if body is None:
        body = envelope.data
    return await vendor_client.dispatch(target, body, api_key, method=method)
