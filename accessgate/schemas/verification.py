"""
Verification schemas: request bodies for each flow step and the discriminated
step result every step returns.
"""
import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from accessgate.core.security import is_strong_password, password_strength
from accessgate.schemas.ledger import FlowState


class ErrorKind(str, Enum):
    INPUT_INVALID = "InputInvalid"
    CREDENTIAL_FAILURE = "CredentialFailure"
    CHALLENGE_EXPIRED_OR_WRONG = "ChallengeExpiredOrWrong"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"


class NextAction(str, Enum):
    RESEND_CODE = "resend_code"
    RETRY = "retry"
    RESTART = "restart"
    CONTACT_SUPPORT = "contact_support"
    TRY_AGAIN_LATER = "try_again_later"


class StepResult(BaseModel):
    status: Literal["advance", "challenge_required", "failed"]
    next_state: FlowState
    detail: dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorKind] = None
    hint: Optional[NextAction] = None

    @classmethod
    def advance(cls, next_state: FlowState, **detail) -> "StepResult":
        return cls(status="advance", next_state=next_state, detail=detail)

    @classmethod
    def challenge(cls, next_state: FlowState, **detail) -> "StepResult":
        return cls(status="challenge_required", next_state=next_state, detail=detail)

    @classmethod
    def failed(
        cls,
        next_state: FlowState,
        error: ErrorKind,
        hint: NextAction,
        **detail,
    ) -> "StepResult":
        return cls(status="failed", next_state=next_state, error=error, hint=hint, detail=detail)


# ── Client signals ────────────────────────────────────────────────────────────

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-]{8,128}$")


class HardwareCharacteristics(BaseModel):
    """
    Stable browser/hardware traits. Only these six feed the fingerprint:
    user agent, language and timezone change too often to be useful.
    """
    platform: str = Field(max_length=100)
    screen_resolution: str = Field(max_length=32)
    hardware_concurrency: int = Field(ge=0, le=1024)
    max_touch_points: int = Field(ge=0, le=256)
    color_depth: int = Field(ge=0, le=128)
    pixel_ratio: float = Field(ge=0, le=16)

    @field_validator("screen_resolution")
    @classmethod
    def resolution_format(cls, v: str) -> str:
        v = v.strip()
        if not re.match(r"^\d{1,5}x\d{1,5}$", v):
            raise ValueError("screen_resolution must look like 1920x1080")
        return v


class DeviceSignals(BaseModel):
    hardware: HardwareCharacteristics
    persistent_token: str

    @field_validator("persistent_token")
    @classmethod
    def token_format(cls, v: str) -> str:
        v = v.strip()
        if not _TOKEN_RE.match(v):
            raise ValueError("persistent_token must be 8-128 URL-safe characters")
        return v


class Coordinates(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


# ── Requests ──────────────────────────────────────────────────────────────────

class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    confirm_password: str
    full_name: Optional[str] = None

    @field_validator("password")
    @classmethod
    def password_strong(cls, v: str) -> str:
        if not is_strong_password(v):
            _, feedback = password_strength(v)
            raise ValueError("Password is too weak: " + "; ".join(feedback or ["add more variety"]))
        return v

    @model_validator(mode="after")
    def passwords_match(self) -> "SignupRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class CredentialsRequest(BaseModel):
    email: EmailStr
    password: str


class FlowRequest(BaseModel):
    flow_token: str


class DeviceCheckRequest(FlowRequest):
    device: DeviceSignals


class OtpVerifyRequest(FlowRequest):
    code: str

    @field_validator("code")
    @classmethod
    def code_format(cls, v: str) -> str:
        v = str(v).strip()
        if not re.match(r"^\d{6}$", v):
            raise ValueError("Code must be 6 digits")
        return v


class LocationCheckRequest(FlowRequest):
    # Browser geolocation, when the user granted it
    coordinates: Optional[Coordinates] = None


class SecurityAnswersRequest(FlowRequest):
    # Same order as the questions returned for the flow
    answers: list[Annotated[str, Field(max_length=72)]] = Field(min_length=1, max_length=5)


class TrustDeviceRequest(BaseModel):
    device: DeviceSignals


class PersistentTokenResponse(BaseModel):
    persistent_token: str
