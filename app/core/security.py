import hashlib
from typing import Any, Iterable

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.core.config import get_settings
from app.core.exceptions import BadRequestError

SESSION_MAX_AGE = 7 * 24 * 3600


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="coin-ledger-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str, max_age_seconds: int = SESSION_MAX_AGE) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


def clean_idempotency_key(key: str | None) -> str | None:
    """Normalize an optional Idempotency-Key header; blank means absent."""
    if key is None:
        return None
    key = key.strip()
    if not key:
        return None
    if len(key) > 128:
        raise BadRequestError("Idempotency-Key must be at most 128 characters")
    return key


def refund_idempotency_key(transaction_ids: Iterable[str]) -> str:
    """Deterministic key for a refund of exactly this set of transactions (order-insensitive)."""
    joined = ",".join(sorted(set(transaction_ids)))
    digest = hashlib.sha256(joined.encode("utf-8")).hexdigest()
    return f"refund_{digest[:32]}"
