"""Authentication service with JWT tokens.

The identity provider signs users in; the API only needs a stable user
id from each request. Access tokens are HS256 JWTs whose `sub` claim is
that id, optionally carrying the profile fields stored with stories.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from config.settings import SERVER_SECRET

# JWT Configuration
JWT_SECRET = SERVER_SECRET
JWT_ALGORITHM = "HS256"
JWT_ACCESS_EXPIRY_MINUTES = 60


class UserInfo(BaseModel):
    """User information from token."""
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


class AuthService:
    """Issues and verifies access tokens."""

    @staticmethod
    def create_access_token(
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        picture: Optional[str] = None,
        expires_minutes: int = JWT_ACCESS_EXPIRY_MINUTES,
    ) -> str:
        """Create a JWT access token."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "email": email,
            "name": name,
            "picture": picture,
            "type": "access",
            "exp": now + timedelta(minutes=expires_minutes),
            "iat": now,
        }
        return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

    @staticmethod
    def verify_access_token(token: str) -> Optional[UserInfo]:
        """Verify and decode an access token."""
        try:
            payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None

        if payload.get("type") != "access" or not payload.get("sub"):
            return None

        return UserInfo(
            user_id=str(payload["sub"]),
            email=payload.get("email"),
            name=payload.get("name"),
            picture=payload.get("picture"),
        )
