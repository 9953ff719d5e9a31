"""Security utilities.

JWT access tokens for the authenticated API, and generation/hashing of
one-time verification codes.
"""

import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from anirum_api.config import settings

CODE_LENGTH = 6
_CODE_SPACE = 10**CODE_LENGTH
_NON_DIGITS = re.compile(r"\D")


# ============================================================================
# One-time verification codes
# ============================================================================


def generate_numeric_code() -> str:
    """Generate a uniformly random 6-digit code, left-zero-padded."""
    return f"{secrets.randbelow(_CODE_SPACE):0{CODE_LENGTH}d}"


def normalize_submitted_code(code: str) -> str | None:
    """Strip non-digits from a user-submitted code.

    Returns:
        The 6-digit code, or None if the input does not contain exactly
        six digits.
    """
    digits = _NON_DIGITS.sub("", code or "")
    if len(digits) != CODE_LENGTH:
        return None
    return digits


def hash_code(code: str, rounds: int | None = None) -> str:
    """Hash a verification code with bcrypt.

    Args:
        code: The plaintext code
        rounds: bcrypt cost factor (defaults to settings)
    """
    salt = bcrypt.gensalt(rounds=rounds or settings.verification_code_hash_rounds)
    return bcrypt.hashpw(code.encode("utf-8"), salt).decode("utf-8")


def verify_code_hash(code: str, code_hash: str) -> bool:
    """Check a plaintext code against a bcrypt hash."""
    return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))


# ============================================================================
# JWT access tokens
# ============================================================================


def create_access_token(
    user_id: uuid.UUID,
    email: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token.

    Args:
        user_id: User's unique identifier
        email: User's email address
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(hours=settings.session_expire_hours)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
    }

    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT access token.

    Returns:
        Token payload dict if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None

    if payload.get("type") != "access":
        return None

    return payload


class TokenData:
    """Parsed token data for type safety."""

    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.email: str = payload["email"]
        self.exp: datetime = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
