from datetime import datetime, timedelta, timezone
import hashlib
import hmac
from typing import Any, Dict, Optional

from jose import jwt


def create_access_token(
    *,
    subject: str,
    secret: str,
    alg: str,
    expires_minutes: int,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        to_encode.update(extra)
    return jwt.encode(to_encode, secret, algorithm=alg)


def sign_hmac_sha256(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hmac_sha256(body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    expected = sign_hmac_sha256(body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


class WebhookSignatureError(Exception):
    pass


def require_hmac_signature(body: bytes, signature: str | None, secret: str) -> None:
    if not signature:
        raise WebhookSignatureError("Missing signature")
    if not verify_hmac_sha256(body, signature, secret):
        raise WebhookSignatureError("Invalid signature")
