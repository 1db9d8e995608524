# models/__init__.py
# Import all models here so that:
# 1. Alembic's env.py can import this single module and detect all tables.
# 2. SQLAlchemy relationship() calls resolve correctly (all classes in same metadata).

from accessgate.models.account import Account
from accessgate.models.otp import OTPChallenge
from accessgate.models.trusted_device import TrustedDevice
from accessgate.models.security_question import SecurityQuestion
from accessgate.models.location_sample import LocationSampleRecord
from accessgate.models.verification_event import VerificationEvent

__all__ = [
    "Account",
    "OTPChallenge",
    "TrustedDevice",
    "SecurityQuestion",
    "LocationSampleRecord",
    "VerificationEvent",
]
