from __future__ import annotations

import hashlib
import hmac
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from app.domain.errors import AuthError

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ISSUER = os.getenv("JWT_ISSUER", "iot-fleet-admin")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "iot-fleet-admin-client")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "15"))
JWT_REFRESH_EXPIRES_DAYS = int(os.getenv("JWT_REFRESH_EXPIRES_DAYS", "7"))
PASSWORD_SALT = os.getenv("PASSWORD_SALT", "fleet-dev-salt")

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"


def hash_password(raw_password: str) -> str:
    return hashlib.sha256(f"{PASSWORD_SALT}:{raw_password}".encode()).hexdigest()


def verify_password(raw_password: str, password_hash: str) -> bool:
    return hmac.compare_digest(hash_password(raw_password), password_hash)


def refresh_expiry(now: datetime | None = None) -> datetime:
    return (now or datetime.now(UTC)) + timedelta(days=JWT_REFRESH_EXPIRES_DAYS)


def _encode(
    *,
    token_type: str,
    secret: str,
    expire_delta: timedelta,
    user_id: str,
    email: str,
    role: str,
    company_ids: list[str],
    primary_company_id: str | None,
) -> str:
    now = datetime.now(UTC)
    payload: dict[str, Any] = {
        "sub": user_id,
        "email": email,
        "role": role,
        "company_ids": company_ids,
        "primary_company_id": primary_company_id,
        "type": token_type,
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    if token_type == TOKEN_TYPE_REFRESH:
        # keeps refresh tokens unique when two are minted in the same second
        payload["jti"] = os.urandom(8).hex()
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def create_token_pair(
    *,
    user_id: str,
    email: str,
    role: str,
    company_ids: list[str],
    primary_company_id: str | None = None,
) -> dict[str, Any]:
    claims: dict[str, Any] = {
        "user_id": user_id,
        "email": email,
        "role": role,
        "company_ids": company_ids,
        "primary_company_id": primary_company_id,
    }
    access_delta = timedelta(minutes=JWT_EXPIRES_MIN)
    return {
        "access_token": _encode(
            token_type=TOKEN_TYPE_ACCESS,
            secret=JWT_SECRET,
            expire_delta=access_delta,
            **claims,
        ),
        "refresh_token": _encode(
            token_type=TOKEN_TYPE_REFRESH,
            secret=JWT_REFRESH_SECRET,
            expire_delta=timedelta(days=JWT_REFRESH_EXPIRES_DAYS),
            **claims,
        ),
        "expires_in": int(access_delta.total_seconds()),
    }


def _decode(token: str, secret: str, expected_type: str, label: str) -> dict[str, Any]:
    try:
        decoded = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError(f"{label} has expired") from exc
    except jwt.PyJWTError as exc:
        raise AuthError(f"Invalid {label.lower()}") from exc
    if not isinstance(decoded, dict) or decoded.get("type") != expected_type:
        raise AuthError(f"Invalid {label.lower()}")
    return decoded


def decode_access_token(token: str) -> dict[str, Any]:
    return _decode(token, JWT_SECRET, TOKEN_TYPE_ACCESS, "Access token")


def decode_refresh_token(token: str) -> dict[str, Any]:
    return _decode(token, JWT_REFRESH_SECRET, TOKEN_TYPE_REFRESH, "Refresh token")
