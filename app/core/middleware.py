"""Bearer-token identity extraction for the inbound connection endpoints."""

import os
from typing import Optional
from dataclasses import dataclass

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from dotenv import load_dotenv

load_dotenv()

# Config
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
REQUIRE_AUTH = os.getenv("REQUIRE_AUTH", "true").lower() == "true"

ANONYMOUS_USER = "anonymous"

security = HTTPBearer(auto_error=False)


@dataclass
class TokenData:
    """Decoded JWT payload. Only the subject is used, as the owner id."""
    sub: str


def decode_token(token: str) -> TokenData:
    """Decode and validate a JWT."""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return TokenData(sub=sub)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenData:
    """
    Dependency to extract the caller's identity from the Authorization header.

    With REQUIRE_AUTH disabled, requests without a token act as an anonymous owner.
    """
    if credentials is None:
        if REQUIRE_AUTH:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authorization header required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return TokenData(sub=ANONYMOUS_USER)

    return decode_token(credentials.credentials)
