"""Security primitives for password hashing, one-time codes and token signing."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import time
from typing import Any


class TokenError(ValueError):
    """Raised when a signed token cannot be trusted."""


class TokenExpiredError(TokenError):
    """Raised when a correctly signed token is past its ``exp`` claim."""


def _b64url_encode(raw: bytes) -> str:
    """Return URL-safe base64 string without padding."""
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    """Decode URL-safe base64 string with optional missing padding."""
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def hash_password(password: str) -> str:
    """Hash password using PBKDF2-HMAC-SHA256 with random salt."""
    salt = os.urandom(16)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 120_000)
    return f"pbkdf2_sha256$120000${_b64url_encode(salt)}${_b64url_encode(derived)}"


def verify_password(password: str, stored_hash: str) -> bool:
    """Verify password against a stored PBKDF2 hash."""
    try:
        algo, rounds_raw, salt_b64, digest_b64 = stored_hash.split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        rounds = int(rounds_raw)
        salt = _b64url_decode(salt_b64)
        expected = _b64url_decode(digest_b64)
    except Exception:
        return False

    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(derived, expected)


def generate_numeric_code(length: int) -> str:
    """Return a zero-padded numeric code drawn from the OS CSPRNG."""
    if length < 4:
        raise ValueError("code length must be at least 4 digits")
    return f"{secrets.randbelow(10**length):0{length}d}"


def hash_code(code: str) -> str:
    """One-way digest used to store and compare one-time codes."""
    return hashlib.sha256(code.strip().encode("utf-8")).hexdigest()


def codes_match(candidate: str, stored_hash: str) -> bool:
    """Compare a candidate code against a stored digest in constant time."""
    return hmac.compare_digest(hash_code(candidate), stored_hash)


def build_signed_token(payload: dict[str, Any], secret_key: str) -> str:
    """Create compact signed token using JWT-like 3-part structure."""
    header = {"alg": "HS256", "typ": "JWT"}
    header_part = _b64url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    payload_part = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_part}.{payload_part}".encode("utf-8")
    signature = hmac.new(secret_key.encode("utf-8"), signing_input, hashlib.sha256).digest()
    signature_part = _b64url_encode(signature)
    return f"{header_part}.{payload_part}.{signature_part}"


def decode_signed_token(
    token: str,
    secret_key: str,
    *,
    issuer: str | None = None,
    audience: str | None = None,
    now: int | None = None,
) -> dict[str, Any]:
    """Decode and verify compact signed token.

    Raises ``TokenExpiredError`` for an expired but otherwise valid token and
    ``TokenError`` for anything else that fails verification.
    """
    try:
        header_part, payload_part, signature_part = token.split(".", 2)
        got_sig = _b64url_decode(signature_part)
    except ValueError as exc:
        raise TokenError("Malformed token") from exc

    signing_input = f"{header_part}.{payload_part}".encode("utf-8")
    expected_sig = hmac.new(secret_key.encode("utf-8"), signing_input, hashlib.sha256).digest()
    if not hmac.compare_digest(expected_sig, got_sig):
        raise TokenError("Invalid token signature")

    try:
        payload = json.loads(_b64url_decode(payload_part).decode("utf-8"))
    except Exception as exc:
        raise TokenError("Invalid token payload") from exc
    if not isinstance(payload, dict):
        raise TokenError("Invalid token payload")

    if issuer is not None and str(payload.get("iss") or "") != issuer:
        raise TokenError("Invalid token issuer")
    if audience is not None and str(payload.get("aud") or "") != audience:
        raise TokenError("Invalid token audience")

    current = int(time.time()) if now is None else now
    exp = int(payload.get("exp") or 0)
    if exp and exp <= current:
        raise TokenExpiredError("Token expired")

    return payload
