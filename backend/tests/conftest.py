import hashlib
import hmac
import json
import os
import tempfile
import time
from pathlib import Path
from uuid import uuid4

_DB_DIR = Path(tempfile.mkdtemp(prefix="eonmeds-tests-"))

os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR / 'test.db'}"
os.environ["APP_ENV"] = "test"
os.environ["AUTH_MODE"] = "local"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef0123456789"
os.environ["HEYFLOW_WEBHOOK_SECRET"] = "heyflow-test-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["WEBHOOK_REQUESTS_PER_MINUTE"] = "10000"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.security import create_access_token, sign_hmac_sha256  # noqa: E402
from app.core.settings import settings  # noqa: E402
from app.main import app  # noqa: E402


def make_token(
    roles: list[str],
    *,
    sub: str | None = None,
    email: str | None = None,
    name: str = "Test User",
    extra: dict | None = None,
) -> str:
    sub = sub or f"auth0|{uuid4().hex[:12]}"
    claims = {
        "email": email or f"{sub.split('|')[-1]}@staff.example.com",
        "name": name,
        settings.auth0_roles_claim: roles,
    }
    if extra:
        claims.update(extra)
    return create_access_token(
        subject=sub,
        secret=settings.secret_key,
        alg=settings.jwt_alg,
        expires_minutes=60,
        extra=claims,
    )


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="session")
def api_client():
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="session")
def auth_headers(api_client):
    return bearer(make_token(["admin"], sub="auth0|test-admin", name="Ada Admin"))


@pytest.fixture(scope="session")
def doctor_headers(api_client):
    return bearer(
        make_token(
            ["doctor"],
            sub="auth0|test-doctor",
            name="Dana Doctor",
            extra={"https://eonmeds.com/credentials": "MD"},
        )
    )


@pytest.fixture(scope="session")
def provider_headers(api_client):
    return bearer(make_token(["provider"], sub="auth0|test-provider", name="Pat Provider"))


@pytest.fixture(scope="session")
def rep_headers(api_client):
    return bearer(make_token(["representative"], sub="auth0|test-rep", name="Rita Rep"))


@pytest.fixture()
def unique_email():
    return f"patient-{uuid4().hex[:10]}@example.com"


@pytest.fixture()
def create_patient(api_client, auth_headers):
    def _create(**overrides) -> dict:
        payload = {
            "first_name": "Maria",
            "last_name": "Lopez",
            "email": f"patient-{uuid4().hex[:10]}@example.com",
            "phone": "555-0100",
        }
        payload.update(overrides)
        response = api_client.post("/api/v1/patients", json=payload, headers=auth_headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _create


@pytest.fixture(scope="session")
def token_headers(api_client):
    def _headers(roles: list[str], **kwargs) -> dict[str, str]:
        return bearer(make_token(roles, **kwargs))

    return _headers


def stripe_signature_header(body: str, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture()
def post_stripe_event(api_client):
    def _post(event: dict, *, secret: str | None = None):
        body = json.dumps(event)
        header = stripe_signature_header(body, secret or settings.stripe_webhook_secret)
        return api_client.post(
            "/api/v1/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": header, "Content-Type": "application/json"},
        )

    return _post


@pytest.fixture()
def post_heyflow(api_client):
    def _post(payload: dict, *, signature: str | None = None, sign: bool = True):
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if signature is not None:
            headers["X-HeyFlow-Signature"] = signature
        elif sign:
            headers["X-HeyFlow-Signature"] = sign_hmac_sha256(body, settings.heyflow_webhook_secret)
        return api_client.post("/api/v1/webhooks/heyflow", content=body, headers=headers)

    return _post
