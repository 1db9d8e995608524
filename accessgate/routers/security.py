"""
Security dashboard router (bearer access token required).

  GET  /security/score          → score of the factors on the latest completed sign-in
  GET  /security/devices        → active trusted devices
  POST /security/devices/trust  → trust the current device for 90 days
  GET  /security/questions      → the user's security questions (never the answers)
  PUT  /security/questions      → replace the security questions
"""
import uuid

from fastapi import APIRouter, Depends, Request

from accessgate.core.clock import Clock
from accessgate.core.dependencies import (
    get_account_directory, get_clock, get_current_user_id, get_geolocation_provider, get_ledger,
)
from accessgate.core.rate_limiter import limiter
from accessgate.schemas.ledger import COMPLETED_EVENT_TYPES, SecurityFactorSet
from accessgate.schemas.security import (
    SecurityQuestionsResponse, SecurityQuestionsSetup, SecurityScoreResponse,
    TrustedDeviceListResponse, TrustedDeviceOut,
)
from accessgate.schemas.verification import TrustDeviceRequest
from accessgate.services import device_identity, location_risk, security_score, trusted_devices
from accessgate.services.account_directory import AccountDirectory
from accessgate.services.ledger import Ledger

router = APIRouter()


@router.get("/score", response_model=SecurityScoreResponse)
def get_security_score(
    user_id: uuid.UUID = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
):
    latest = ledger.latest_event(user_id, COMPLETED_EVENT_TYPES)
    factors = latest.factors if latest is not None else SecurityFactorSet()
    return SecurityScoreResponse(
        assessment=security_score.score(factors),
        last_verified_at=latest.created_at if latest is not None else None,
    )


@router.get("/devices", response_model=TrustedDeviceListResponse)
def list_devices(
    user_id: uuid.UUID = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
    clock: Clock = Depends(get_clock),
):
    records = trusted_devices.list_trusted_devices(ledger, user_id, clock)
    return TrustedDeviceListResponse(
        devices=[TrustedDeviceOut.model_validate(r.model_dump()) for r in records]
    )


@router.post("/devices/trust", response_model=TrustedDeviceOut, status_code=201)
@limiter.limit("10/minute")
async def trust_current_device(
    request: Request,
    body: TrustDeviceRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    ledger: Ledger = Depends(get_ledger),
    geolocation=Depends(get_geolocation_provider),
    clock: Clock = Depends(get_clock),
):
    ip = device_identity.client_ip(request)
    device = device_identity.derive_hybrid(ip, body.device.hardware, body.device.persistent_token)
    first_seen = await location_risk.resolve(geolocation, ip, clock)
    record = trusted_devices.trust_device(ledger, user_id, device, first_seen, clock)
    return TrustedDeviceOut.model_validate(record.model_dump())


@router.get("/questions", response_model=SecurityQuestionsResponse)
def list_security_questions(
    user_id: uuid.UUID = Depends(get_current_user_id),
    directory: AccountDirectory = Depends(get_account_directory),
):
    return SecurityQuestionsResponse(questions=directory.security_questions(user_id))


@router.put("/questions", response_model=SecurityQuestionsResponse)
@limiter.limit("5/minute")
def set_security_questions(
    request: Request,
    body: SecurityQuestionsSetup,
    user_id: uuid.UUID = Depends(get_current_user_id),
    directory: AccountDirectory = Depends(get_account_directory),
):
    questions = directory.set_security_questions(
        user_id, [(item.question, item.answer) for item in body.questions]
    )
    return SecurityQuestionsResponse(questions=questions)
