"""
Security utilities for bearer-token authentication.

Token issuance lives with the identity provider; this service only
verifies HS256 tokens and extracts the caller's identity.
"""
from datetime import timedelta
from typing import Optional
import jwt
from jwt import InvalidTokenError
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import structlog

from apps.core.config import utcnow
from apps.core.settings import settings

logger = structlog.get_logger(__name__)

# JWT token scheme
bearer_scheme = HTTPBearer()


class CurrentUser:
    """User object extracted from a JWT token."""

    def __init__(self, user_id: str, email: str, role: str = "user"):
        self.id = user_id
        self.email = email
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def __repr__(self):
        return f"CurrentUser(id={self.id}, email={self.email}, role={self.role})"


class SecurityUtils:
    """Security utility functions."""

    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create a JWT access token (used by tooling and tests)."""
        to_encode = data.copy()
        to_encode["exp"] = utcnow() + (expires_delta or timedelta(hours=1))
        return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    @staticmethod
    def verify_token(token: str) -> Optional[dict]:
        """Verify and decode JWT token."""
        try:
            return jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm]
            )
        except InvalidTokenError as e:
            logger.info("JWT validation failed", error=str(e))
            return None


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)
) -> CurrentUser:
    """Get current authenticated user from the bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = SecurityUtils.verify_token(credentials.credentials)
    if payload is None or not payload.get("sub"):
        raise credentials_exception

    return CurrentUser(
        user_id=str(payload["sub"]),
        email=payload.get("email", ""),
        role=payload.get("role", "user")
    )


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Allow only administrators through."""
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user
