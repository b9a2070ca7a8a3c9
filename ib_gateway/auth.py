"""
Bearer token to session resolution.

This module handles the Authentication (AuthN) layer:
- Extracts Bearer tokens from the HTTP Authorization header
- Finds the session whose OAuth access token matches the presented token
- Rejects sessions that are not completed or whose IntelligenceBank sid
  has expired
- Builds the RFC 6750 WWW-Authenticate challenge sent with 401 responses

Tokens are opaque to the gateway. They are issued by the OAuth bridge and
recorded on the session by the session manager; the only thing checked here is
that a live session owns the token.

A failed lookup is terminal for that request: the client must re-authenticate
before retrying, so nothing here retries or refreshes.
"""

import re
from typing import Iterable

from ib_gateway.errors import AuthenticationRequired
from ib_gateway.sessions import AuthSession

REQUIRED_SCOPE = "read write"
INVALID_TOKEN = "invalid_token"
DEFAULT_ERROR_DESCRIPTION = "Authentication required to access IntelligenceBank resources"

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def extract_bearer_token(authorization_header: str | None) -> str | None:
    """
    Extract the token from a "Bearer <token>" Authorization header.

    Returns None if the header is missing, uses another scheme, or carries
    no token. The "Bearer" scheme is matched case-insensitively per RFC 6750.
    """
    if not authorization_header:
        return None
    match = _BEARER_PATTERN.match(authorization_header.strip())
    if match is None:
        return None
    return match.group(1).strip() or None


def find_session(
    sessions: Iterable[AuthSession],
    authorization_header: str | None,
    now: float | None = None,
) -> AuthSession | None:
    """
    Return the usable session that owns the presented bearer token.

    Args:
        sessions: Session collection to scan (order does not matter)
        authorization_header: The raw Authorization header value
        now: Current epoch seconds, for testing sid expiry

    Returns:
        The first matching completed session with a live sid, or None
    """
    token = extract_bearer_token(authorization_header)
    if token is None:
        return None

    for session in sessions:
        if session.tokens is None or session.tokens.access_token != token:
            continue
        if session.is_usable(now):
            return session

    return None


def build_www_authenticate(
    realm: str,
    scope: str | None = REQUIRED_SCOPE,
    error: str | None = INVALID_TOKEN,
    error_description: str | None = DEFAULT_ERROR_DESCRIPTION,
) -> str:
    """
    Build the WWW-Authenticate header value for a 401 response.

    Example:
        Bearer realm="https://mcp.example.com", scope="read write",
        error="invalid_token", error_description="Authentication required ..."
    """
    parts = [f'Bearer realm="{realm}"']
    if scope:
        parts.append(f'scope="{scope}"')
    if error:
        parts.append(f'error="{error}"')
    if error_description:
        parts.append(f'error_description="{error_description}"')
    return ", ".join(parts)


def require_session(
    sessions: Iterable[AuthSession],
    authorization_header: str | None,
    realm: str,
) -> AuthSession:
    """
    Like find_session(), but raises instead of returning None.

    Raises:
        AuthenticationRequired: Carrying the challenge header for the 401 response
    """
    session = find_session(sessions, authorization_header)
    if session is None:
        raise AuthenticationRequired(
            "Authentication required",
            www_authenticate=build_www_authenticate(realm),
        )
    return session
