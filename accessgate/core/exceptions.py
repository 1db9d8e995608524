"""
Centralised exceptions.

HTTP exceptions are raised by routers and dependencies. Domain exceptions are
raised by adapters (Account Directory, Notifier, Ledger) for conditions that
are genuinely exceptional; the orchestrator converts them into a generic
"try again later" step result, and anything that still escapes is mapped by the
handlers registered in main.py.
"""
from fastapi import HTTPException, status


class CredentialsException(HTTPException):
    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class NotFoundException(HTTPException):
    def __init__(self, resource: str = "Resource"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found",
        )


class ConflictException(HTTPException):
    def __init__(self, detail: str = "Resource already exists"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


# ── Domain exceptions ─────────────────────────────────────────────────────────

class UpstreamUnavailableError(Exception):
    """Account Directory, Notifier, or geolocation provider could not be reached."""

    def __init__(self, service: str, reason: str = ""):
        self.service = service
        self.reason = reason
        super().__init__(f"{service} unavailable: {reason}" if reason else f"{service} unavailable")


class LedgerError(Exception):
    """Stored verification data could not be read or written."""


class ChallengeConflictError(LedgerError):
    """Another open challenge for the same purpose and subject was written first."""
