"""
FastAPI dependencies used across routers.

Every adapter the verification engine talks to (ledger, account directory,
notifier, geolocation provider, clock) is resolved here, so tests swap them
with app.dependency_overrides instead of patching modules.
"""
import uuid

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from jwt.exceptions import InvalidTokenError

from accessgate.database import get_db
from accessgate.core.clock import Clock, system_clock
from accessgate.core.exceptions import CredentialsException
from accessgate.core.security import decode_access_token
from accessgate.services.account_directory import AccountDirectory, SqlAccountDirectory
from accessgate.services.email_service import EmailNotifier, Notifier
from accessgate.services.geolocation_service import IpApiGeolocationProvider
from accessgate.services.ledger import Ledger, SqlLedger
from accessgate.services.orchestrator import VerificationOrchestrator

# Access tokens are only issued by a completed login flow
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login/credentials")

_notifier = None


def get_ledger(db: Session = Depends(get_db)) -> Ledger:
    return SqlLedger(db)


def get_account_directory(db: Session = Depends(get_db)) -> AccountDirectory:
    return SqlAccountDirectory(db)


def get_notifier() -> Notifier:
    # FastMail holds no connection between sends; one instance is enough
    global _notifier
    if _notifier is None:
        _notifier = EmailNotifier()
    return _notifier


def get_geolocation_provider() -> IpApiGeolocationProvider:
    return IpApiGeolocationProvider()


def get_clock() -> Clock:
    return system_clock


def get_orchestrator(
    ledger: Ledger = Depends(get_ledger),
    directory: AccountDirectory = Depends(get_account_directory),
    notifier: Notifier = Depends(get_notifier),
    geolocation=Depends(get_geolocation_provider),
    clock: Clock = Depends(get_clock),
) -> VerificationOrchestrator:
    return VerificationOrchestrator(
        ledger=ledger,
        directory=directory,
        notifier=notifier,
        geolocation=geolocation,
        clock=clock,
    )


def get_current_user_id(token: str = Depends(oauth2_scheme)) -> uuid.UUID:
    """
    Validates the bearer access token and returns the user id it was issued to.
    """
    try:
        payload = decode_access_token(token)
        return uuid.UUID(payload["sub"])
    except (InvalidTokenError, KeyError, ValueError):
        raise CredentialsException()
