from datetime import datetime, timedelta, timezone

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from app.core import auth0
from app.core.auth0 import Auth0Verifier, JWKSCache, TokenVerificationError, extract_roles

DOMAIN = "eonmeds-test.us.auth0.com"
AUDIENCE = "https://api.eonmeds.test"


@pytest.fixture(scope="module")
def rsa_keys():
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    public_jwk["kid"] = "key-1"
    return private_pem, public_jwk


@pytest.fixture()
def jwks_requests(monkeypatch, rsa_keys):
    calls: list[str] = []

    def fake_get(url, timeout=None):
        calls.append(url)
        return httpx.Response(
            200, json={"keys": [rsa_keys[1]]}, request=httpx.Request("GET", url)
        )

    monkeypatch.setattr(auth0.httpx, "get", fake_get)
    return calls


def _token(private_pem: str, *, kid: str = "key-1", **overrides) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": "auth0|abc123",
        "aud": AUDIENCE,
        "iss": f"https://{DOMAIN}/",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=5)).timestamp()),
        "https://eonmeds.com/roles": ["Provider"],
    }
    claims.update(overrides)
    return jwt.encode(claims, private_pem, algorithm="RS256", headers={"kid": kid})


def test_verify_valid_token(rsa_keys, jwks_requests):
    verifier = Auth0Verifier(DOMAIN, AUDIENCE)
    claims = verifier.verify(_token(rsa_keys[0]))
    assert claims["sub"] == "auth0|abc123"
    assert jwks_requests == [f"https://{DOMAIN}/.well-known/jwks.json"]

    # Cached keys are reused.
    verifier.verify(_token(rsa_keys[0]))
    assert len(jwks_requests) == 1


def test_wrong_audience_rejected(rsa_keys, jwks_requests):
    verifier = Auth0Verifier(DOMAIN, AUDIENCE)
    with pytest.raises(TokenVerificationError):
        verifier.verify(_token(rsa_keys[0], aud="https://other.example.com"))


def test_expired_token_rejected(rsa_keys, jwks_requests):
    verifier = Auth0Verifier(DOMAIN, AUDIENCE)
    past = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
    with pytest.raises(TokenVerificationError):
        verifier.verify(_token(rsa_keys[0], exp=past))


def test_unknown_kid_refetches_then_fails(rsa_keys, jwks_requests):
    verifier = Auth0Verifier(DOMAIN, AUDIENCE)
    verifier.verify(_token(rsa_keys[0]))
    with pytest.raises(TokenVerificationError, match="Unknown signing key"):
        verifier.verify(_token(rsa_keys[0], kid="rotated"))
    assert len(jwks_requests) == 2


def test_hs256_token_rejected(jwks_requests):
    token = jwt.encode({"sub": "x"}, "shared-secret", algorithm="HS256")
    with pytest.raises(TokenVerificationError, match="Unsupported token algorithm"):
        Auth0Verifier(DOMAIN, AUDIENCE).verify(token)
    assert jwks_requests == []


def test_jwks_fetch_failure(monkeypatch):
    def failing_get(url, timeout=None):
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(auth0.httpx, "get", failing_get)
    cache = JWKSCache(DOMAIN)
    with pytest.raises(TokenVerificationError, match="Unable to fetch JWKS"):
        cache.get_key("key-1")


def test_extract_roles_claim_fallbacks():
    roles_claim = "https://eonmeds.com/roles"
    assert extract_roles({roles_claim: ["Admin"]}, roles_claim=roles_claim, domain=None) == ["admin"]
    assert extract_roles(
        {f"https://{DOMAIN}/roles": "doctor"}, roles_claim=roles_claim, domain=DOMAIN
    ) == ["doctor"]
    assert extract_roles({"roles": ["provider"]}, roles_claim=roles_claim, domain=None) == ["provider"]
    assert extract_roles({}, roles_claim=roles_claim, domain=DOMAIN) == []
