"""
JWT token service for authentication.

Tokens are issued by the account system; this service verifies them and
turns the claims into a Principal.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from wahub.config import settings


ROLE_PERMISSIONS = {
    "admin": frozenset({"*"}),
    "member": frozenset({"messages:send", "webhooks:read"}),
    # service token held by the WhatsApp automation process
    "transport": frozenset({"transport:publish"}),
}


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, scoped to one organisation."""
    user_id: str
    organisation_id: str
    role: str
    email: str | None = None


def check_permission(principal: Principal, action: str) -> bool:
    """Static role map: admin may do anything, other roles a fixed set."""
    allowed = ROLE_PERMISSIONS.get(principal.role, frozenset())
    return "*" in allowed or action in allowed


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def __init__(self, secret_key: str | None = None, algorithm: str | None = None):
        self._secret_key = secret_key or settings.JWT_SECRET_KEY
        self._algorithm = algorithm or settings.JWT_ALGORITHM

    def create_token(self, user_id: str, org_id: str, role: str, email: str | None = None) -> str:
        """
        Create a JWT token with user context.

        Args:
            user_id: User's unique ID
            org_id: Organisation ID
            role: User role (admin or member)
            email: User's email

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": user_id,
            "org_id": org_id,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError:
            return None

    def verify_credential(self, token: str) -> Principal | None:
        """Decode a bearer token into a Principal, None when invalid or incomplete."""
        payload = self.verify_token(token)
        if payload is None:
            return None
        try:
            return Principal(
                user_id=payload["sub"],
                organisation_id=payload["org_id"],
                role=payload.get("role", "member"),
                email=payload.get("email"),
            )
        except KeyError:
            return None
