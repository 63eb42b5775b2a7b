"""
Module: auth.py
Description: Bearer-token identity resolution for the advisor API.

Provides:
    - JWT verification against a JWKS endpoint (RS256) or a shared HS256 secret
    - get_current_user dependency for FastAPI
    - User ID extraction from the ``sub`` claim

Usage:
    @app.get("/protected")
    async def protected_route(user_id: str = Depends(get_current_user)):
        ...
"""

from functools import lru_cache
from typing import Optional

import jwt
from fastapi import HTTPException, Request, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config import Settings
from services.observability import logger


security = HTTPBearer(auto_error=False)


# =============================================================================
# JWT Verification
# =============================================================================

@lru_cache(maxsize=4)
def get_jwks_client(jwks_url: str) -> jwt.PyJWKClient:
    """JWKS client per URL, cached so signing keys are fetched once."""
    return jwt.PyJWKClient(jwks_url)


def verify_token(token: str, settings: Settings) -> Optional[dict]:
    """
    Verify a bearer JWT and return its claims, or None when it is not acceptable.

    With neither a JWKS URL nor a secret configured, development environments
    accept unsigned claims; every other environment rejects the token.
    """
    if not token:
        return None

    if settings.auth_bypass:
        return {"sub": settings.auth_bypass_user_id}

    try:
        if settings.jwt_jwks_url:
            signing_key = get_jwks_client(settings.jwt_jwks_url).get_signing_key_from_jwt(token)
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                options={"verify_aud": False},
            )

        if settings.jwt_secret:
            return jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )

        if settings.environment == "development":
            return jwt.decode(token, options={"verify_signature": False})

    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
    except jwt.PyJWKClientError as e:
        logger.warning("Signing key lookup failed", error=str(e))
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token", error=str(e))

    return None


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    """
    Resolve the caller's user ID from the Authorization header.

    Raises:
        HTTPException: 401 if not authenticated or token invalid.
    """
    settings: Settings = request.app.state.settings

    if settings.auth_bypass:
        return settings.auth_bypass_user_id

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    claims = verify_token(credentials.credentials, settings)

    if not claims:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token. Please sign in again.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = claims.get("sub")

    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user_id
