import logging
from datetime import datetime, timezone
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.auth0 import Auth0Verifier, JWKSCache, TokenVerificationError, extract_roles
from app.core.settings import settings
from app.db.session import get_db
from app.models.user import User

logger = logging.getLogger("eonmeds.auth")

CLAIM_NAMESPACE = "https://eonmeds.com"


@lru_cache(maxsize=1)
def get_auth0_verifier() -> Auth0Verifier:
    cache = JWKSCache(settings.auth0_domain, ttl_seconds=settings.jwks_cache_ttl_seconds)
    return Auth0Verifier(settings.auth0_domain, settings.auth0_audience, cache=cache)


def decode_token(token: str) -> dict:
    if settings.auth_mode == "local":
        try:
            return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_alg])
        except JWTError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    if not settings.auth0_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service not configured",
        )
    try:
        return get_auth0_verifier().verify(token)
    except TokenVerificationError as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def provision_user(db: Session, claims: dict) -> User:
    sub = claims.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    roles = extract_roles(
        claims, roles_claim=settings.auth0_roles_claim, domain=settings.auth0_domain
    )
    profile = {
        "email": claims.get("email") or claims.get(f"{CLAIM_NAMESPACE}/email"),
        "full_name": claims.get("name") or "",
        "credentials": claims.get(f"{CLAIM_NAMESPACE}/credentials"),
        "language": claims.get(f"{CLAIM_NAMESPACE}/language") or "en",
        "roles": roles,
    }

    user = db.scalar(select(User).where(User.auth0_sub == sub))
    if user is None:
        user = User(auth0_sub=sub, is_active=True, last_login_at=datetime.now(timezone.utc), **profile)
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info("Provisioned user %s", user.id)
        return user

    changed = False
    for key, value in profile.items():
        if key == "full_name" and not value:
            continue
        if getattr(user, key) != value:
            setattr(user, key, value)
            changed = True
    if changed:
        user.last_login_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(user)
    return user


def get_current_user(
    db: Session = Depends(get_db), authorization: str | None = Header(default=None)
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    claims = decode_token(token)
    user = provision_user(db, claims)
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Inactive user")
    return user


def require_roles(*roles: str):
    def _inner(user: User = Depends(get_current_user)) -> User:
        if not user.has_role(*roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user

    return _inner


def client_ip(request: Request | None) -> str | None:
    if request is None or request.client is None:
        return None
    return request.client.host
