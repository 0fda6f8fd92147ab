"""
Access token decoding for requests authenticated by the external auth provider.

Sessions are issued by the hosted auth provider; this service only verifies
the signed access tokens it receives and turns their claims into a
``Requester`` (id, email, role) used for order scoping and status
authorization.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from storefront.core.config import get_settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)

ROLE_ADMIN = "admin"
ROLE_VENDOR = "vendor"
ROLE_USER = "user"


class TokenError(Exception):
    """Raised when an access token cannot be decoded or validated."""

    def __init__(self, message: str, code: str, **context):
        super().__init__(message)
        self.message = message
        self.code = code
        self.context = context


@dataclass(frozen=True)
class Requester:
    """Identity of the caller as asserted by a verified access token."""

    id: str
    role: str = ROLE_USER
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_vendor(self) -> bool:
        return self.role == ROLE_VENDOR


def _truthy(value: Any) -> bool:
    return value is True or str(value).lower() == "true"


def role_from_claims(claims: Dict[str, Any]) -> str:
    """
    Derive the application role from token claims.

    Provider-controlled ``app_metadata.role`` wins over user-editable
    ``user_metadata``; an ``isAdmin`` flag in user metadata still grants the
    admin role for accounts created before roles existed.
    """
    app_metadata = claims.get("app_metadata") or {}
    user_metadata = claims.get("user_metadata") or {}

    for candidate in (app_metadata.get("role"), user_metadata.get("role")):
        if candidate:
            return str(candidate).lower()

    if _truthy(user_metadata.get("isAdmin")):
        return ROLE_ADMIN

    return ROLE_USER


def decode_access_token(token: str) -> Requester:
    """
    Decode and validate an access token.

    Args:
        token: Bearer token from the Authorization header

    Returns:
        Requester built from the token claims

    Raises:
        TokenError: If the token is empty, expired, malformed or has no subject
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()

    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except ExpiredSignatureError as e:
        logger.warning("Access token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning(
            "Invalid access token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError("Invalid token", code="TOKEN_INVALID") from e

    subject = claims.get("sub")
    if not subject:
        raise TokenError("Token missing 'sub' claim", code="TOKEN_NO_SUBJECT")

    requester = Requester(
        id=str(subject),
        role=role_from_claims(claims),
        email=claims.get("email"),
        claims=claims,
    )

    logger.debug(
        "Access token decoded",
        user_id=requester.id,
        role=requester.role,
    )

    return requester

