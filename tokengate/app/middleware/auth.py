"""Caller identity and admin authentication.

Authentication proper happens upstream; this module only turns an
already-authenticated request into the subject string buckets are keyed by.
"""

import hashlib
import hmac
from typing import Optional

from fastapi import HTTPException, Request

from tokengate.app.core.config import settings
from tokengate.app.exceptions import AuthenticationError

MAX_TOKEN_LENGTH = 512


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip() or None


def hash_token(token: str) -> str:
    """Subject for an API key. Raw keys are never stored or logged."""
    # 32 hex chars (128 bits) for collision resistance
    return f"apikey:{hashlib.sha256(token.encode()).hexdigest()[:32]}"


def resolve_subject(request: Request) -> Optional[str]:
    """Resolve the caller identity for rate limiting.

    Uses ``request.state.subject`` when an upstream authentication layer set
    it, otherwise a hash of the Bearer token.

    Returns:
        Subject string, or None when the caller is anonymous

    Raises:
        HTTPException: 400 if the Bearer token is unreasonably long
    """
    subject = getattr(request.state, "subject", None)
    if subject:
        return str(subject)

    token = get_bearer_token(request)
    if not token:
        return None

    # Checked before hashing to avoid burning CPU on huge inputs
    if len(token) > MAX_TOKEN_LENGTH:
        raise HTTPException(
            status_code=400, detail=f"API key too long (max {MAX_TOKEN_LENGTH} characters)"
        )
    return hash_token(token)


def require_subject(request: Request) -> str:
    """FastAPI dependency returning the caller subject.

    Raises:
        AuthenticationError: If no identity could be resolved
    """
    subject = resolve_subject(request)
    if subject is None:
        raise AuthenticationError()
    return subject


def get_admin_token() -> str:
    """Get the admin token from settings.

    Raises:
        HTTPException: 503 if ADMIN_TOKEN is not configured
    """
    token = settings.admin_token
    if not token:
        raise HTTPException(
            status_code=503,
            detail="Admin API disabled: ADMIN_TOKEN is not configured",
        )
    return token


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Args:
        request: The incoming request

    Returns:
        Admin identifier if valid

    Raises:
        HTTPException: 401 if admin token is missing or invalid
    """
    expected_token = get_admin_token()

    # Always compare, even without a token, so timing does not reveal which
    # case was hit
    token = get_bearer_token(request) or ""

    if not hmac.compare_digest(token.encode(), expected_token.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
