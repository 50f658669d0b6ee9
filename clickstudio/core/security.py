"""
Security helpers for password hashing and signed JWT tokens.

Passwords are hashed with Argon2id through ``pwdlib``. Hashes produced by
older deployments (``pbkdf2_sha256$rounds$salt$hex``) still verify and are
reported as needing a rehash. Tokens are compact HS256 JWTs signed with
the server-held secret.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import re
import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from pwdlib import PasswordHash
from pwdlib.hashers.argon2 import Argon2Hasher

LEGACY_PBKDF2_PREFIX = "pbkdf2_sha256$"
DEFAULT_EXPIRY_SECONDS = 900

_EXPIRY_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_SPECIAL_CHARS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
_COMMON_PATTERNS = (
    re.compile(r"^password", re.IGNORECASE),
    re.compile(r"^123456"),
    re.compile(r"^qwerty", re.IGNORECASE),
    re.compile(r"^admin", re.IGNORECASE),
    re.compile(r"(.)\1{3,}"),
)


class TokenExpiredError(ValueError):
    pass


class TokenInvalidError(ValueError):
    pass


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _password_hasher() -> PasswordHash:
    return PasswordHash(
        (
            Argon2Hasher(
                memory_cost=_env_int("PASSWORD_HASH_MEMORY_KIB", 65536),
                time_cost=_env_int("PASSWORD_HASH_TIME_COST", 3),
            ),
        )
    )


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty")
    return _password_hasher().hash(password)


def _verify_legacy_pbkdf2(password: str, encoded: str) -> bool:
    try:
        algo, rounds_raw, salt, expected_hex = encoded.split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        rounds = int(rounds_raw)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), rounds)
    return secrets.compare_digest(digest.hex(), expected_hex)


def verify_password(password: str, encoded: str) -> bool:
    if not password or not encoded:
        return False
    if encoded.startswith(LEGACY_PBKDF2_PREFIX):
        return _verify_legacy_pbkdf2(password, encoded)
    try:
        return _password_hasher().verify(password=password, hash=encoded)
    except Exception:
        # Unrecognised or corrupt hash format.
        return False


def needs_rehash(encoded: str) -> bool:
    return not encoded.startswith("$argon2id$")


def validate_password_strength(password: str) -> dict[str, Any]:
    errors: list[str] = []
    score = 0

    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    else:
        score += 1
        if len(password) >= 12:
            score += 1
        if len(password) >= 16:
            score += 1

    if not any(c.isupper() for c in password):
        errors.append("Password must contain at least one uppercase letter")
    else:
        score += 1
    if not any(c.islower() for c in password):
        errors.append("Password must contain at least one lowercase letter")
    else:
        score += 1
    if not any(c.isdigit() for c in password):
        errors.append("Password must contain at least one number")
    else:
        score += 1
    if not any(c in _SPECIAL_CHARS for c in password):
        errors.append("Password must contain at least one special character")
    else:
        score += 1

    for pattern in _COMMON_PATTERNS:
        if pattern.search(password):
            errors.append("Password contains a common pattern")
            score -= 2
            break

    return {"valid": not errors, "errors": errors, "score": max(0, min(score, 7))}


def generate_secure_password(length: int = 16) -> str:
    length = max(length, 8)
    pools = (string.ascii_uppercase, string.ascii_lowercase, string.digits, "!@#$%^&*()_+-=[]{}|;:,.<>?")
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def parse_expiry_seconds(expiry: str) -> int:
    match = _EXPIRY_RE.match((expiry or "").strip())
    if not match:
        return DEFAULT_EXPIRY_SECONDS
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenSigner:
    """Issues and verifies HS256 tokens for one issuer/audience pair."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_expiry: str = "15m",
        refresh_expiry: str = "7d",
    ) -> None:
        if not secret:
            raise RuntimeError("JWT_SECRET is required to sign tokens")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = parse_expiry_seconds(access_expiry)
        self.refresh_ttl = parse_expiry_seconds(refresh_expiry)

    def _sign(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        signing_input = (
            f"{_b64url_encode(json.dumps(header, separators=(',', ':')).encode('utf-8'))}."
            f"{_b64url_encode(json.dumps(payload, separators=(',', ':')).encode('utf-8'))}"
        )
        signature = hmac.new(self._secret, signing_input.encode("ascii"), hashlib.sha256).digest()
        return f"{signing_input}.{_b64url_encode(signature)}"

    def _claims(self, ttl: int, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
        }

    def create_access_token(
        self,
        *,
        user_id: str,
        email: str,
        username: str,
        roles: list[str],
        permissions: list[str],
        session_id: str,
        now: datetime | None = None,
    ) -> str:
        payload = {
            "sub": user_id,
            "email": email,
            "username": username,
            "roles": roles,
            "permissions": permissions,
            "sid": session_id,
            "type": "access",
            **self._claims(self.access_ttl, now),
        }
        return self._sign(payload)

    def create_refresh_token(self, *, user_id: str, session_id: str, now: datetime | None = None) -> str:
        payload = {
            "sub": user_id,
            "sid": session_id,
            "jti": str(uuid.uuid4()),
            "type": "refresh",
            **self._claims(self.refresh_ttl, now),
        }
        return self._sign(payload)

    def decode(self, token: str, *, expected_type: str | None = None) -> dict[str, Any]:
        parts = (token or "").split(".")
        if len(parts) != 3:
            raise TokenInvalidError("Malformed token")
        header_b64, payload_b64, signature_b64 = parts
        try:
            signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
            provided_sig = _b64url_decode(signature_b64)
            header = json.loads(_b64url_decode(header_b64).decode("utf-8"))
            payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
        except (ValueError, UnicodeError) as exc:
            raise TokenInvalidError("Malformed token") from exc
        expected_sig = hmac.new(self._secret, signing_input, hashlib.sha256).digest()
        if not secrets.compare_digest(expected_sig, provided_sig):
            raise TokenInvalidError("Invalid signature")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenInvalidError("Unsupported token algorithm")
        if not isinstance(payload, dict):
            raise TokenInvalidError("Invalid payload")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise TokenInvalidError("Invalid issuer or audience")
        try:
            exp = int(payload.get("exp") or 0)
        except (TypeError, ValueError) as exc:
            raise TokenInvalidError("Invalid exp") from exc
        if exp <= 0:
            raise TokenInvalidError("Missing exp")
        now_ts = int(datetime.now(timezone.utc).timestamp())
        if now_ts >= exp:
            raise TokenExpiredError("Token expired")
        if expected_type and payload.get("type") != expected_type:
            raise TokenInvalidError("Invalid token type")
        if not payload.get("sub") or not payload.get("sid"):
            raise TokenInvalidError("Invalid token claims")
        return payload


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None
