"""
OTP service: generation, storage (HMAC digest), and single-use validation.

Security design decisions:
  1. Raw OTP is NEVER stored, only a keyed HMAC digest. A leaked table is useless
     without the application secret.
  2. A new code for the same purpose+subject invalidates every earlier unused one,
     so a resend never leaves the previous code usable. The ledger refuses a
     second open challenge for the key, so racing issues cannot leave two.
  3. Codes expire OTP_EXPIRY_MINUTES after issuance (10 by default).
  4. Consumption is a single conditional write on the ledger: two concurrent
     validations of the same code cannot both succeed.
  5. Codes for different purposes never satisfy each other: the purpose is part
     of both the lookup key and the digest.
  6. Brute force is bounded by slowapi limits at the HTTP layer.
"""
import logging
import re
from datetime import timedelta

from accessgate.config import settings
from accessgate.core.clock import Clock, RandomSource, system_clock, system_random
from accessgate.core.exceptions import ChallengeConflictError
from accessgate.core.security import otp_digest
from accessgate.schemas.ledger import OtpChallenge, OtpPurpose
from accessgate.services.ledger import Ledger

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(r"^\d{6}$")


def normalize_subject(subject: str) -> str:
    """Emails are compared lower-cased and trimmed."""
    return str(subject or "").strip().lower()


def normalize_code(code) -> str:
    return str(code if code is not None else "").strip()


def generate_otp(rng: RandomSource = system_random) -> str:
    """
    Uniform 6-digit code in [100000, 999999].
    randbelow(900000) gives 0–899999, +100000 keeps it six digits.
    """
    return str(rng.randbelow(900000) + 100000)


def issue(
    ledger: Ledger,
    purpose: OtpPurpose,
    subject: str,
    clock: Clock = system_clock,
    rng: RandomSource = system_random,
) -> str:
    """
    Supersede any open challenge for (purpose, subject), persist a new one and
    return the raw code for the Notifier. The code itself is never persisted.
    """
    subject = normalize_subject(subject)
    now = clock.now()

    # A concurrent issue can insert between our invalidate and insert; the
    # ledger then rejects ours and one more pass supersedes the winner.
    for attempt in range(2):
        superseded = ledger.invalidate_challenges(purpose, subject, now)
        if superseded:
            logger.info(f"Superseded {superseded} open {purpose.value} challenge(s)")

        code = generate_otp(rng)
        try:
            ledger.put_challenge(
                OtpChallenge(
                    purpose=purpose,
                    subject=subject,
                    code_hash=otp_digest(purpose.value, subject, code),
                    issued_at=now,
                    expires_at=now + timedelta(minutes=settings.otp_expiry_minutes),
                )
            )
        except ChallengeConflictError:
            if attempt:
                raise
            logger.warning(f"Concurrent {purpose.value} code issued for the same subject, retrying")
            continue
        return code


def validate(
    ledger: Ledger,
    purpose: OtpPurpose,
    subject: str,
    code,
    clock: Clock = system_clock,
) -> bool:
    """
    True iff an unconsumed, unexpired challenge matches purpose, subject and code.
    On success the challenge is consumed in the same write; on failure nothing
    changes. Malformed codes fail without touching the ledger.
    """
    subject = normalize_subject(subject)
    code = normalize_code(code)
    if not subject or not _CODE_RE.match(code):
        return False

    consumed = ledger.consume_challenge(
        purpose,
        subject,
        otp_digest(purpose.value, subject, code),
        clock.now(),
    )
    if not consumed:
        logger.info(f"Rejected {purpose.value} code: wrong, expired, or already used")
    return consumed
