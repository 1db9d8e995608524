"""
Time and randomness primitives shared by every verification component.

Services never call datetime.now() or the random module directly: they take a
Clock and a RandomSource so tests can pin time (expiry, trust windows) and
codes without monkeypatching.
"""
import secrets
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Treat naive datetimes as UTC.
    SQLite drops tzinfo on round-trip; Postgres timestamptz keeps it.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    def now(self) -> datetime:
        return utcnow()


class RandomSource:
    """
    Cryptographically secure randomness (secrets module, not random).
    """

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)

    def token(self, nbytes: int = 16) -> str:
        return secrets.token_urlsafe(nbytes)


system_clock = Clock()
system_random = RandomSource()
