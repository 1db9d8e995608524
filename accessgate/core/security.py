"""
Security utilities: password hashing, JWT tokens, and OTP digests.
Uses PyJWT (not python-jose) and passlib bcrypt.
"""
import hashlib
import hmac
import re
import uuid
import jwt
from jwt.exceptions import InvalidTokenError
from passlib.context import CryptContext
from datetime import datetime, timedelta
from typing import Optional

from accessgate.config import settings
from accessgate.core.clock import utcnow

# ── Password Hashing ──────────────────────────────────────────────────────────
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


# ── Password Strength ─────────────────────────────────────────────────────────

_COMMON_PATTERNS = re.compile(
    r"123456|password|qwerty|abc123|admin|letmein|welcome|monkey|dragon", re.IGNORECASE
)


def password_strength(password: str) -> tuple[int, list[str]]:
    """
    Score 0-6: one point each for length >= 8, length >= 12, lowercase,
    uppercase, digit, and symbol; minus two for a common pattern and minus one
    for a character repeated three times in a row. Returns (score, feedback).
    """
    feedback = []
    score = 0
    if len(password) >= 8:
        score += 1
    else:
        feedback.append("Password must be at least 8 characters long")
    if len(password) >= 12:
        score += 1

    for pattern, hint in (
        (r"[a-z]", "Include lowercase letters"),
        (r"[A-Z]", "Include uppercase letters"),
        (r"\d", "Include numbers"),
        (r"[^a-zA-Z\d]", "Include special characters"),
    ):
        if re.search(pattern, password):
            score += 1
        else:
            feedback.append(hint)

    if _COMMON_PATTERNS.search(password):
        score = max(0, score - 2)
        feedback.append("Avoid common passwords and patterns")
    if re.search(r"(.)\1{2,}", password):
        score = max(0, score - 1)
        feedback.append("Avoid repetitive characters")

    return min(score, 6), feedback


def is_strong_password(password: str) -> bool:
    score, _ = password_strength(password)
    return score >= 4 and len(password) >= 8


# ── OTP Digest ────────────────────────────────────────────────────────────────
# OTPs are stored as a keyed HMAC, not bcrypt: the digest must be deterministic
# so consumption can be a single conditional UPDATE matching on it.

def otp_digest(purpose: str, subject: str, code: str) -> str:
    message = f"{purpose}:{subject}:{code}".encode()
    return hmac.new(settings.secret_key.encode(), message, hashlib.sha256).hexdigest()


# ── JWT Token Creation ────────────────────────────────────────────────────────

def create_access_token(user_id: str, now: Optional[datetime] = None) -> str:
    """
    Short-lived access token issued once a verification flow reaches COMPLETE.
    """
    issued = now or utcnow()
    payload = {
        "sub": user_id,
        "type": "access",
        "iat": issued,
        "exp": issued + timedelta(minutes=settings.access_token_expire_minutes),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def create_flow_token(user_id: str, flow_id: uuid.UUID, now: Optional[datetime] = None) -> str:
    """
    Handle for an in-progress signup/login flow.

    It only identifies the flow; it carries no state. Every step re-reads the
    flow state from the ledger, so a replayed or tampered-with client copy of
    the state is never trusted.
    """
    issued = now or utcnow()
    payload = {
        "sub": user_id,
        "flow": str(flow_id),
        "type": "flow",
        "iat": issued,
        "exp": issued + timedelta(minutes=settings.flow_token_expire_minutes),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> dict:
    """
    Raises jwt.exceptions.InvalidTokenError (or subclass) on any failure.
    """
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    if payload.get("type") != "access":
        raise InvalidTokenError("Not an access token")
    return payload


def decode_flow_token(token: str) -> tuple[str, uuid.UUID]:
    """
    Returns (user_id, flow_id).
    Raises InvalidTokenError for expired, forged, or malformed tokens.
    """
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    if payload.get("type") != "flow":
        raise InvalidTokenError("Not a flow token")
    try:
        return str(payload["sub"]), uuid.UUID(payload["flow"])
    except (KeyError, ValueError) as exc:
        raise InvalidTokenError("Malformed flow token") from exc
