"""Principal extraction for the HTTP boundary.

Validates HS256 access tokens and turns their claims into an explicit
``Principal``. The principal is passed as an argument to every guard and
workflow call; nothing in the core looks it up from ambient state.

Facility service keys are checked here too -- they authenticate a
facility integration, not a person.
"""

import logging
import secrets
from dataclasses import dataclass

import jwt

from atcroster.roster.models import Facility

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated controller acting on a request."""

    cid: int
    name: str = ""
    email: str = ""


def principal_from_claims(payload: dict) -> Principal:
    """Build a principal from decoded token claims.

    Raises:
        jwt.InvalidTokenError: If the subject claim is missing or not a CID
    """
    subject = payload.get("sub")
    try:
        cid = int(subject)
    except (TypeError, ValueError):
        raise jwt.InvalidTokenError(f"Token subject is not a CID: {subject!r}") from None

    return Principal(
        cid=cid,
        name=payload.get("name", ""),
        email=(payload.get("email") or "").lower(),
    )


class TokenValidator:
    """Validates HS256 JWT access tokens issued by the login service."""

    def __init__(self, secret: str, *, issuer: str = "", audience: str = "") -> None:
        """Initialize validator.

        Args:
            secret: Shared HMAC signing secret
            issuer: Expected ``iss`` claim (not checked when empty)
            audience: Expected ``aud`` claim (not checked when empty)
        """
        if not secret:
            raise ValueError("Token secret not set. Required: ROSTER_JWT_SECRET")
        self.secret = secret
        self.issuer = issuer
        self.audience = audience

    def validate_token(self, token: str) -> Principal:
        """Validate a Bearer token and return the principal.

        Args:
            token: Raw JWT access token (without "Bearer " prefix)

        Raises:
            jwt.InvalidTokenError: If the token is invalid
        """
        options = {"require": ["exp", "sub"], "verify_aud": bool(self.audience)}
        payload = jwt.decode(
            token,
            self.secret,
            algorithms=["HS256"],
            audience=self.audience or None,
            issuer=self.issuer or None,
            options=options,
        )
        return principal_from_claims(payload)


def service_key_matches(facility: Facility, api_key: str | None) -> bool:
    """Check a presented service key against the facility's live or sandbox key."""
    if not api_key:
        return False
    for candidate in (facility.api_key, facility.api_sandbox_key):
        if candidate and secrets.compare_digest(candidate, api_key):
            return True
    logger.info("Rejected service key for facility %s", facility.id)
    return False
