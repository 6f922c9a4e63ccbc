from __future__ import annotations
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from dotenv import load_dotenv
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

load_dotenv()

bearer_scheme = HTTPBearer(auto_error=False)


class InvalidToken(Exception):
    pass


class TokenIdentity:
    """Resolves researcher bearer tokens to a user id.

    Tokens are HS256 JWTs signed by the auth backend with the user id in
    ``sub`` (the shape Supabase issues). ``issue`` exists for local tooling
    and tests; this service never hands tokens to end users.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", audience: Optional[str] = None):
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience or None

    @classmethod
    def from_env(cls) -> "TokenIdentity":
        return cls(
            secret=os.getenv("AUTH_JWT_SECRET", "change-me"),
            algorithm=os.getenv("AUTH_JWT_ALGORITHM", "HS256"),
            audience=os.getenv("AUTH_JWT_AUDIENCE"),
        )

    def issue(self, user_id: str, expires_minutes: int = 60) -> str:
        now = datetime.now(timezone.utc)
        claims = {"sub": str(user_id), "iat": int(now.timestamp()), "exp": now + timedelta(minutes=expires_minutes)}
        if self.audience:
            claims["aud"] = self.audience
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def resolve(self, token: str) -> str:
        """Validate ``token`` and return its user id.

        Raises:
            InvalidToken: bad signature, expired, or no subject.
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"require": ["exp", "sub"], "verify_aud": bool(self.audience)},
                leeway=5,
            )
        except jwt.ExpiredSignatureError:
            raise InvalidToken("Token expired")
        except jwt.InvalidTokenError:
            raise InvalidToken("Invalid token")
        sub = str(payload.get("sub") or "").strip()
        if not sub:
            raise InvalidToken("Token has no subject")
        return sub


def get_identity(request: Request) -> TokenIdentity:
    return request.app.state.identity


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    identity: TokenIdentity = Depends(get_identity),
) -> str:
    if creds is None or not creds.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No token provided")
    try:
        return identity.resolve(creds.credentials)
    except InvalidToken as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
