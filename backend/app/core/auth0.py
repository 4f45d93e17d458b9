from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx
from jose import JWTError, jwt

logger = logging.getLogger("eonmeds.auth")


class TokenVerificationError(Exception):
    pass


class JWKSCache:
    """Caches an Auth0 tenant's signing keys by ``kid``.

    Keys are refetched once the TTL lapses, or on demand when a token names a
    ``kid`` the cache has not seen (Auth0 key rotation).
    """

    def __init__(self, domain: str, *, ttl_seconds: int = 3600, timeout: float = 10.0) -> None:
        self.domain = domain.strip().rstrip("/")
        self.jwks_url = f"https://{self.domain}/.well-known/jwks.json"
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._keys: dict[str, dict[str, Any]] = {}
        self._fetched_at: float | None = None
        self._lock = threading.Lock()

    def _expired(self) -> bool:
        return self._fetched_at is None or time.monotonic() - self._fetched_at > self.ttl_seconds

    def _fetch(self) -> None:
        try:
            response = httpx.get(self.jwks_url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TokenVerificationError(f"Unable to fetch JWKS: {exc}") from exc
        keys = response.json().get("keys", [])
        self._keys = {key["kid"]: key for key in keys if key.get("kid")}
        self._fetched_at = time.monotonic()
        logger.info("JWKS refreshed (%s keys)", len(self._keys))

    def get_key(self, kid: str) -> dict[str, Any]:
        with self._lock:
            if self._expired():
                self._fetch()
            key = self._keys.get(kid)
            if key is None:
                self._fetch()
                key = self._keys.get(kid)
        if key is None:
            raise TokenVerificationError("Unknown signing key")
        return key


class Auth0Verifier:
    def __init__(self, domain: str, audience: str, *, cache: JWKSCache | None = None) -> None:
        self.domain = domain.strip().rstrip("/")
        self.audience = audience
        self.issuer = f"https://{self.domain}/"
        self.cache = cache or JWKSCache(self.domain)

    def verify(self, token: str) -> dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenVerificationError("Malformed token header") from exc
        if header.get("alg") != "RS256":
            raise TokenVerificationError("Unsupported token algorithm")
        kid = header.get("kid")
        if not kid:
            raise TokenVerificationError("Token is missing kid")
        key = self.cache.get_key(kid)
        try:
            return jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self.audience,
                issuer=self.issuer,
            )
        except JWTError as exc:
            raise TokenVerificationError(str(exc)) from exc


def extract_roles(claims: dict[str, Any], *, roles_claim: str, domain: str | None) -> list[str]:
    candidates = [roles_claim]
    if domain:
        candidates.append(f"https://{domain.strip().rstrip('/')}/roles")
    candidates.append("roles")
    for claim in candidates:
        value = claims.get(claim)
        if value:
            if isinstance(value, str):
                value = [value]
            return [str(role).strip().lower() for role in value if str(role).strip()]
    return []
