"""
Notifier: delivers one-time codes to the user, over SMTP via fastapi-mail.

fastapi-mail ConnectionConfig notes:
  - port 587: MAIL_STARTTLS=True, MAIL_SSL_TLS=False
  - port 465: MAIL_SSL_TLS=True, MAIL_STARTTLS=False
  - MAIL_SUPPRESS_SEND=True builds the message but never opens a connection
    (local development)

Delivery failure is reported to the caller as UpstreamUnavailableError. It is
never a validation failure: the challenge already exists and a resend replaces it.
"""
import logging
import uuid
from abc import ABC, abstractmethod

from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType

from accessgate.config import settings
from accessgate.core.exceptions import UpstreamUnavailableError
from accessgate.schemas.ledger import OtpPurpose

logger = logging.getLogger(__name__)

_SUBJECTS = {
    OtpPurpose.EMAIL: "Verify your email address",
    OtpPurpose.DEVICE: "Confirm this new device",
    OtpPurpose.LOCATION: "Confirm a sign-in from a new location",
}

_REASONS = {
    OtpPurpose.EMAIL: "You are finishing creating your account.",
    OtpPurpose.DEVICE: "Someone signed in to your account from a device we don't recognise.",
    OtpPurpose.LOCATION: "Someone signed in to your account from an unfamiliar location.",
}


def otp_message(purpose: OtpPurpose, code: str) -> tuple[str, str]:
    """(subject, body) for a verification code email."""
    body = (
        f"{_REASONS[purpose]}\n\n"
        f"Your verification code is: {code}\n\n"
        f"This code is valid for {settings.otp_expiry_minutes} minutes.\n"
        f"Do not share this with anyone.\n\n"
        f"If this wasn't you, change your password immediately."
    )
    return _SUBJECTS[purpose], body


class Notifier(ABC):
    @abstractmethod
    async def send(self, contact: str, subject: str, body: str) -> str:
        """
        Deliver a message and return a message id.
        Raises UpstreamUnavailableError when delivery fails.
        """


class EmailNotifier(Notifier):
    def __init__(self, config: ConnectionConfig = None):
        self.config = config or ConnectionConfig(
            MAIL_USERNAME=settings.mail_username,
            MAIL_PASSWORD=settings.mail_password,
            MAIL_FROM=settings.mail_from,
            MAIL_PORT=settings.mail_port,
            MAIL_SERVER=settings.mail_server,
            MAIL_STARTTLS=True,
            MAIL_SSL_TLS=False,
            USE_CREDENTIALS=bool(settings.mail_username),
            VALIDATE_CERTS=True,
            SUPPRESS_SEND=int(settings.mail_suppress_send),
            TIMEOUT=settings.mail_timeout_seconds,
        )
        self.fast_mail = FastMail(self.config)

    async def send(self, contact: str, subject: str, body: str) -> str:
        message = MessageSchema(
            subject=subject,
            recipients=[contact],
            body=body,
            subtype=MessageType.plain,
        )
        try:
            await self.fast_mail.send_message(message)
        except Exception as exc:
            # fastapi-mail wraps SMTP errors in its own ConnectionErrors, but
            # aiosmtplib timeouts can surface unwrapped
            logger.error(f"Email delivery failed: {exc.__class__.__name__}")
            raise UpstreamUnavailableError("notifier", exc.__class__.__name__) from exc
        return uuid.uuid4().hex
