"""
JWT token service for authentication.

Tokens carry the user id, tenant (org_id claim) and role that become the
RequestContext of every API call.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from alumni_hooks.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(
        self,
        user_id: str,
        org_id: str,
        role: str,
        email: str,
        expires_in: timedelta | None = None,
    ) -> str:
        """
        Create a JWT token with user context.

        Args:
            user_id: User's unique ID
            org_id: Tenant ID
            role: User role (admin or member)
            email: User's email
            expires_in: Lifetime; defaults to JWT_EXPIRATION_MINUTES

        Returns:
            Encoded JWT token string
        """
        lifetime = expires_in or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)
        expires = datetime.now(timezone.utc) + lifetime

        payload = {
            "sub": user_id,
            "org_id": org_id,
            "role": role,
            "email": email,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid or expired
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
