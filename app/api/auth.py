"""
Caller Identity

Callables carry a Firebase ID token as a bearer credential. The token is
verified with the Firebase Admin SDK; a missing or unverifiable token means
no caller identity is attached and the call is rejected as unauthenticated
before anything else runs.
"""

from __future__ import annotations
import os
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import auth as firebase_auth
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.errors import UnauthenticatedError

logger = logging.getLogger("functions.auth")

security = HTTPBearer(auto_error=False)

_firebase_app = None


@dataclass
class Caller:
    """A verified caller."""
    uid: str
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


def get_firebase_app():
    """Initialize the Firebase Admin app once, with application default credentials."""
    global _firebase_app
    if _firebase_app is None:
        try:
            _firebase_app = firebase_admin.get_app()
        except ValueError:
            project_id = os.getenv("GOOGLE_CLOUD_PROJECT", os.getenv("GCLOUD_PROJECT"))
            options = {"projectId": project_id} if project_id else None
            _firebase_app = firebase_admin.initialize_app(options=options)
            logger.info(f"Firebase Admin initialized (project: {project_id})")
    return _firebase_app


def verify_id_token(token: str) -> Optional[Caller]:
    """Return the caller for a valid ID token, None otherwise."""
    try:
        decoded = firebase_auth.verify_id_token(token, app=get_firebase_app())
    except (
        firebase_auth.InvalidIdTokenError,
        firebase_auth.ExpiredIdTokenError,
        firebase_auth.RevokedIdTokenError,
        firebase_auth.CertificateFetchError,
        ValueError,
    ) as e:
        logger.warning(f"ID token verification failed: {type(e).__name__}")
        return None

    return Caller(uid=decoded["uid"], email=decoded.get("email"), claims=decoded)


async def get_current_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Caller]:
    """Get the verified caller, if any."""
    if not credentials:
        return None
    return verify_id_token(credentials.credentials)


def require_auth(caller: Optional[Caller] = Depends(get_current_caller)) -> Caller:
    """Require a verified caller."""
    if not caller:
        raise UnauthenticatedError("The function must be called while authenticated.")
    return caller
