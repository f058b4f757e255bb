from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from database import get_db
from crud import Actor, get_profile, upsert_profile
from models import UserRole
import httpx
import logging
import os

logger = logging.getLogger("messaging.auth")

AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://auth-service:8000")
AUTH_TIMEOUT = float(os.getenv("AUTH_TIMEOUT", "5.0"))

http_bearer = HTTPBearer(auto_error=False)


def _account_from_response(response: httpx.Response) -> dict:
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token"
        )
    account = response.json()
    if not account.get("id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication payload"
        )
    return account


def resolve_account(credentials: HTTPAuthorizationCredentials = Depends(http_bearer)):
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        response = httpx.get(
            f"{AUTH_SERVICE_URL}/api/v1/auth/me",
            headers={"Authorization": f"Bearer {credentials.credentials}"},
            timeout=AUTH_TIMEOUT
        )
    except httpx.HTTPError as exc:
        logger.error("Auth service unreachable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Cannot verify authentication: {exc}"
        ) from exc
    return _account_from_response(response)


async def resolve_account_from_token(token: str):
    """WebSocket variant: the token arrives as a query parameter."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token"
        )
    try:
        async with httpx.AsyncClient(timeout=AUTH_TIMEOUT) as client:
            response = await client.get(
                f"{AUTH_SERVICE_URL}/api/v1/auth/me",
                headers={"Authorization": f"Bearer {token}"},
            )
    except httpx.HTTPError as exc:
        logger.error("Auth service unreachable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Cannot verify authentication: {exc}"
        ) from exc
    return _account_from_response(response)


def actor_for_account(db: Session, account: dict) -> Actor:
    """Map an auth-service account onto the local profile mirror.

    Accounts the profile worker has not mirrored yet are inserted from the
    /me payload so a freshly signed-up user can message straight away.
    """
    profile_id = int(account["id"])
    profile = get_profile(db, profile_id)
    if profile is None:
        role = account.get("role")
        if role not in {r.value for r in UserRole}:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Messaging is only available to teachers and students"
            )
        profile, _ = upsert_profile(
            db,
            profile_id,
            email=account.get("email") or f"user-{profile_id}@unknown",
            full_name=account.get("full_name") or account.get("name") or "",
            role=UserRole(role),
            avatar_url=account.get("avatar_url"),
        )
        logger.info("Mirrored profile %s from auth payload", profile_id)
    return Actor.from_profile(profile)


def get_current_actor(
    account: dict = Depends(resolve_account),
    db: Session = Depends(get_db),
) -> Actor:
    return actor_for_account(db, account)
