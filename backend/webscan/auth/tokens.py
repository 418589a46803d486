# webscan/auth/tokens.py
from __future__ import annotations

from typing import Optional
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired


# Token expiry: 8 hours absolute max
DEFAULT_MAX_AGE = 60 * 60 * 8

def _serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key, salt="webscan-auth")


def create_access_token(*, secret_key: str, requester_id: str) -> str:
    return _serializer(secret_key).dumps({"requester_id": str(requester_id)})


def verify_access_token(
    *, secret_key: str, token: str, max_age_seconds: int = DEFAULT_MAX_AGE
) -> Optional[str]:
    """
    Verify a token and return the requester_id, or None if invalid/expired.
    """
    try:
        data = _serializer(secret_key).loads(token, max_age=max_age_seconds)
    except SignatureExpired:
        return None
    except BadSignature:
        # Tampered or signed with another key
        return None
    rid = data.get("requester_id") if isinstance(data, dict) else None
    return str(rid) if rid else None
