"""
Ledger records: the typed entities the verification components read and write.

Events are tagged variants discriminated on event_type. They are decoded
leniently: a stored device id or location that no longer validates degrades to
the "unknown" device/location instead of failing the whole read.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class OtpPurpose(str, Enum):
    EMAIL = "email"
    DEVICE = "device"
    LOCATION = "location"


class FlowKind(str, Enum):
    SIGNUP = "signup"
    LOGIN = "login"


class FlowState(str, Enum):
    CREDENTIALS_PENDING = "CREDENTIALS_PENDING"
    DEVICE_CHECK = "DEVICE_CHECK"
    OTP_CHALLENGE = "OTP_CHALLENGE"
    LOCATION_CHECK = "LOCATION_CHECK"
    LOCATION_OTP_CHALLENGE = "LOCATION_OTP_CHALLENGE"
    COMPLETE = "COMPLETE"
    ABORTED = "ABORTED"


TERMINAL_STATES = frozenset({FlowState.COMPLETE, FlowState.ABORTED})

UNKNOWN = "Unknown"
UNKNOWN_DEVICE_ID = "unknown"


# ── Entities ──────────────────────────────────────────────────────────────────

class OtpChallenge(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    purpose: OtpPurpose
    subject: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False
    consumed_at: Optional[datetime] = None


class LocationSample(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ip: str
    city: str = UNKNOWN
    country: str = UNKNOWN
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    observed_at: datetime

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def is_unknown(self) -> bool:
        return self.city == UNKNOWN and self.country == UNKNOWN

    @classmethod
    def unknown(cls, ip: str, observed_at: datetime) -> "LocationSample":
        return cls(ip=ip, observed_at=observed_at)


class TrustedDeviceRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: uuid.UUID
    device_id: str
    trusted_until: datetime
    created_at: datetime
    first_seen_ip: Optional[str] = None
    first_seen_city: Optional[str] = None
    first_seen_country: Optional[str] = None


class SecurityFactorSet(BaseModel):
    valid_credentials: bool = False
    trusted_device: bool = False
    recognized_location: bool = False
    additional_verification: bool = False


# ── Events ────────────────────────────────────────────────────────────────────

def _lenient_device_id(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return UNKNOWN_DEVICE_ID


class _EventBase(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: uuid.UUID
    flow_id: uuid.UUID
    state: FlowState
    created_at: datetime


class CredentialsVerified(_EventBase):
    event_type: Literal["credentials_verified"] = "credentials_verified"
    kind: FlowKind
    email: str


class DeviceVerification(_EventBase):
    """
    Written when the device step decides, and again when its OTP is passed.
    observed_device_id is the server-derived id of the current device.
    """
    event_type: Literal["device_verification"] = "device_verification"
    kind: FlowKind
    email: str
    observed_device_id: str = UNKNOWN_DEVICE_ID
    stored_device_id: Optional[str] = None
    matched: bool = False
    matched_by: Optional[str] = None  # "previous_login" | "trusted_device"
    otp_verified: bool = False
    resolved_device_id: str = UNKNOWN_DEVICE_ID

    @field_validator("observed_device_id", "resolved_device_id", mode="before")
    @classmethod
    def device_id_or_unknown(cls, v) -> str:
        return _lenient_device_id(v)


class LocationVerification(_EventBase):
    event_type: Literal["location_verification"] = "location_verification"
    kind: FlowKind
    email: str
    location: Optional[LocationSample] = None
    risk_score: int
    verification_required: bool
    distance_km: Optional[float] = None
    otp_verified: bool = False

    @field_validator("location", mode="wrap")
    @classmethod
    def location_or_none(cls, v, handler):
        try:
            return handler(v)
        except ValidationError:
            return None


class SecurityQuestionsVerified(_EventBase):
    """Enough security answers were correct; the flow stays in LOCATION_CHECK."""
    event_type: Literal["security_questions_verified"] = "security_questions_verified"
    kind: FlowKind
    email: str
    asked: int
    correct: int


class _CompletedBase(_EventBase):
    device_id: str = UNKNOWN_DEVICE_ID
    location: Optional[LocationSample] = None
    factors: SecurityFactorSet = Field(default_factory=SecurityFactorSet)
    security_score: int = 0
    risk_score: Optional[int] = None

    @field_validator("device_id", mode="before")
    @classmethod
    def device_id_or_unknown(cls, v) -> str:
        return _lenient_device_id(v)

    @field_validator("location", mode="wrap")
    @classmethod
    def location_or_none(cls, v, handler):
        try:
            return handler(v)
        except ValidationError:
            return None


class SignupCompleted(_CompletedBase):
    event_type: Literal["signup_completed"] = "signup_completed"


class LoginCompleted(_CompletedBase):
    event_type: Literal["login_completed"] = "login_completed"


class FlowAborted(_EventBase):
    event_type: Literal["flow_aborted"] = "flow_aborted"
    reason: str


VerificationEventRecord = Annotated[
    Union[
        CredentialsVerified,
        DeviceVerification,
        LocationVerification,
        SecurityQuestionsVerified,
        SignupCompleted,
        LoginCompleted,
        FlowAborted,
    ],
    Field(discriminator="event_type"),
]

COMPLETED_EVENT_TYPES = ("signup_completed", "login_completed")
