"""
Identity resolution for checkout requests.

The bearer credential from the Authorization header is exchanged with the
identity provider for an auth identity, which is then mapped to the public
`users` row. The resulting ResolvedIdentity is the only place a caller id
ever comes from; request bodies carry no user fields.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx
import jwt
from sqlalchemy import select

from checkout_backend.core.database import get_db_session, users
from checkout_backend.core.errors import UnauthenticatedError
from checkout_backend.core.results import Failure, StepResult, Success

logger = logging.getLogger("checkout")

_BEARER = re.compile(r"^\s*bearer(?:\s+(.*))?$", re.IGNORECASE | re.DOTALL)

AUTH_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class AuthSession:
    """What the identity provider vouches for."""
    auth_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None


@dataclass(frozen=True)
class ResolvedIdentity:
    """Server-derived caller identity."""
    user_id: str
    auth_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None


class SessionProvider(Protocol):
    async def exchange(self, token: str) -> Optional[AuthSession]:
        """Return the session for `token`, or None if it is not valid."""
        ...


def _session_from_claims(claims: Any) -> Optional[AuthSession]:
    if not isinstance(claims, dict):
        return None
    auth_id = claims.get("sub") or claims.get("id")
    if not auth_id:
        return None
    metadata = claims.get("user_metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    return AuthSession(
        auth_id=str(auth_id),
        email=claims.get("email"),
        full_name=metadata.get("full_name") or metadata.get("name"),
    )


class JwtSessionProvider:
    """Verifies HS256 access tokens locally with the provider's shared secret."""

    def __init__(self, secret: str, audience: Optional[str] = None):
        self.secret = secret
        self.audience = audience

    async def exchange(self, token: str) -> Optional[AuthSession]:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=["HS256"],
                audience=self.audience,
                options={"verify_aud": self.audience is not None, "verify_exp": True},
            )
        except jwt.ExpiredSignatureError:
            logger.info("auth.token_expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.info(f"auth.invalid_token: {e.__class__.__name__}")
            return None
        return _session_from_claims(claims)


class HttpSessionProvider:
    """Asks the identity provider's user endpoint who owns the token."""

    def __init__(self, auth_url: str, api_key: Optional[str] = None, timeout: float = AUTH_TIMEOUT_SECONDS):
        self.auth_url = auth_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def exchange(self, token: str) -> Optional[AuthSession]:
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.auth_url}/auth/v1/user", headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"auth.exchange_failed: {e.__class__.__name__}")
            return None
        if response.status_code != 200:
            return None
        try:
            body = response.json()
        except ValueError:
            logger.warning("auth.exchange_failed: non-JSON user reply")
            return None
        return _session_from_claims(body)


def build_session_provider(settings_obj) -> Optional[SessionProvider]:
    secret = getattr(settings_obj, "AUTH_JWT_SECRET", None)
    if secret:
        return JwtSessionProvider(secret)
    auth_url = getattr(settings_obj, "AUTH_URL", None)
    if auth_url:
        return HttpSessionProvider(auth_url, getattr(settings_obj, "AUTH_ANON_KEY", None))
    return None


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Credential from a `Bearer` header; None for other schemes or an empty token."""
    if not authorization:
        return None
    match = _BEARER.match(authorization)
    if not match or not match.group(1):
        return None
    return match.group(1).strip() or None


def lookup_user(auth_id: str) -> Optional[Dict[str, Any]]:
    with get_db_session() as session:
        row = session.execute(
            select(users.c.id, users.c.email, users.c.full_name).where(users.c.auth_id == auth_id)
        ).first()
    return dict(row._mapping) if row else None


async def resolve_identity(authorization: Optional[str], provider: Optional[SessionProvider]) -> StepResult:
    """Resolve the caller from the Authorization header.

    Returns Success(ResolvedIdentity), or Failure(UnauthenticatedError) for a
    missing credential, a failed exchange or an unknown user.
    """
    token = extract_bearer_token(authorization)
    if not token:
        return Failure(UnauthenticatedError("Missing bearer token"))
    if provider is None:
        return Failure(UnauthenticatedError("Identity provider is not configured"))

    session = await provider.exchange(token)
    if session is None:
        return Failure(UnauthenticatedError("Invalid or expired session"))

    user = lookup_user(session.auth_id)
    if user is None:
        return Failure(UnauthenticatedError("User not found"))

    return Success(ResolvedIdentity(
        user_id=user["id"],
        auth_id=session.auth_id,
        email=user.get("email") or session.email,
        full_name=user.get("full_name") or session.full_name,
    ))
