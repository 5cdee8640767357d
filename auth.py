"""Authentication helpers integrating AWS Cognito JWTs.

This module provides FastAPI dependencies that:
1. Extract the ID token from the ``Authorization: Bearer <id_token>`` header,
   or from the ``id_token`` cookie for server-rendered pages.
2. Download / cache the JSON Web Key Set (JWKS) for your Cognito User Pool.
3. Verify signature, expiration and audience.
4. Create or fetch a ``models.User`` database row on-the-fly.

``get_current_user`` rejects anonymous requests with 401 (JSON API).
``get_optional_user`` returns None instead so pages can redirect to sign-in.

When ``auth_billing_enabled`` is off every request runs as a local dev user.
"""
from __future__ import annotations

import time
from functools import lru_cache
from typing import Annotated, Optional

import httpx
import structlog
from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.orm import Session

import crud
import models
import schemas
from database import get_db
from settings import get_settings

logger = structlog.get_logger(__name__)

LOCAL_USER_EMAIL = "local@example.com"
TOKEN_COOKIE_NAME = "id_token"


class TokenPayload(BaseModel):
    sub: str
    email: Optional[str] = None
    exp: int
    aud: str


class AuthSettings(BaseModel):
    region: str
    user_pool_id: str
    client_id: str

    @property
    def issuer(self) -> str:  # cognito issuer URL
        return f"https://cognito-idp.{self.region}.amazonaws.com/{self.user_pool_id}"

    @property
    def jwks_url(self) -> str:
        return f"{self.issuer}/.well-known/jwks.json"


@lru_cache
def _load_settings() -> AuthSettings:
    settings = get_settings()
    if not settings.auth_billing_enabled:
        raise RuntimeError("Cognito auth disabled in local mode")
    if not settings.cognito_user_pool_id or not settings.cognito_app_client_id:
        raise RuntimeError("COGNITO_USER_POOL_ID and COGNITO_APP_CLIENT_ID must be set")
    return AuthSettings(
        region=settings.aws_region or "us-east-1",
        user_pool_id=settings.cognito_user_pool_id,
        client_id=settings.cognito_app_client_id,
    )


@lru_cache
def _get_jwks():
    settings = _load_settings()
    logger.info("Fetching JWKS", jwks_url=settings.jwks_url)
    resp = httpx.get(settings.jwks_url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def verify_token(token: str) -> TokenPayload:
    """Verify Cognito JWT and return payload.

    Raises HTTPException(401) on failure.
    """
    if not get_settings().auth_billing_enabled:
        # Return dummy payload for local usage
        return TokenPayload(
            sub="local-dev",
            email=LOCAL_USER_EMAIL,
            exp=int(time.time()) + 3600,
            aud="local",
        )

    settings = _load_settings()
    jwks = _get_jwks()

    try:
        payload = jwt.decode(
            token,
            jwks,
            algorithms=["RS256"],
            audience=settings.client_id,
            issuer=settings.issuer,
            options={"verify_at_hash": False},
        )
        return TokenPayload.model_validate(payload)
    except JWTError as exc:
        logger.warning("JWT verification failed", exc=str(exc))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def _get_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    return request.cookies.get(TOKEN_COOKIE_NAME)


def _get_or_create_user(db: Session, email: str, cognito_sub: str) -> models.User:
    user = crud.get_user_by_email(db, email)
    if not user:
        user = crud.create_user(db, schemas.UserCreate(email=email, cognito_sub=cognito_sub))
        db.commit()
        logger.info("Created user on first sign-in", user_id=user.id)
    return user


# --- FastAPI dependencies ---
async def get_optional_user(
    token: Annotated[Optional[str], Depends(_get_token)],
    db: Session = Depends(get_db),
) -> Optional[models.User]:
    if not get_settings().auth_billing_enabled:
        # Local dev: always return / create a default user
        return _get_or_create_user(db, LOCAL_USER_EMAIL, "local-dev")

    if not token:
        return None

    payload = verify_token(token)
    return _get_or_create_user(db, payload.email or payload.sub, payload.sub)


async def get_current_user(
    user: Annotated[Optional[models.User], Depends(get_optional_user)],
) -> models.User:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return user
