"""
Flow step router, mounted under both /login and /signup.

Every endpoint takes the flow_token from the credentials step. The flow kind
and current state come from the ledger, so the same endpoints drive both
flows:

  POST /device                     → DEVICE_CHECK: recognised device or device/email code
  POST /otp/verify                 → OTP_CHALLENGE
  POST /otp/resend                 → replace the open code (device or location)
  POST /location                   → LOCATION_CHECK: risk score, maybe location code
  POST /location/otp/verify        → LOCATION_OTP_CHALLENGE
  POST /security-questions         → LOCATION_CHECK: the user's questions
  POST /security-questions/verify  → LOCATION_CHECK: answers as an extra factor
  POST /cancel                     → ABORTED
"""
from fastapi import APIRouter, Depends, Request, Response

from accessgate.core.dependencies import get_orchestrator
from accessgate.core.rate_limiter import limiter, OTP_SEND_LIMIT, OTP_VERIFY_LIMIT
from accessgate.core.responses import step_response
from accessgate.schemas.verification import (
    DeviceCheckRequest, FlowRequest, LocationCheckRequest, OtpVerifyRequest,
    SecurityAnswersRequest, StepResult,
)
from accessgate.services.device_identity import client_ip
from accessgate.services.orchestrator import VerificationOrchestrator

router = APIRouter()


# ── Device ────────────────────────────────────────────────────────────────────

@router.post("/device", response_model=StepResult)
@limiter.limit(OTP_VERIFY_LIMIT)
async def check_device(
    request: Request,
    response: Response,
    body: DeviceCheckRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """
    The device id is derived server-side from the caller IP, the hardware
    traits and the persistent token. A client-sent id is never accepted.
    """
    result = await orchestrator.check_device(body.flow_token, client_ip(request), body.device)
    return step_response(result, response)


@router.post("/otp/verify", response_model=StepResult)
@limiter.limit(OTP_VERIFY_LIMIT)
async def verify_otp(
    request: Request,
    response: Response,
    body: OtpVerifyRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.verify_otp(body.flow_token, body.code)
    return step_response(result, response)


@router.post("/otp/resend", response_model=StepResult)
@limiter.limit(OTP_SEND_LIMIT)
async def resend_otp(
    request: Request,
    response: Response,
    body: FlowRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.challenge_otp(body.flow_token)
    return step_response(result, response)


# ── Location ──────────────────────────────────────────────────────────────────

@router.post("/location", response_model=StepResult)
@limiter.limit(OTP_VERIFY_LIMIT)
async def check_location(
    request: Request,
    response: Response,
    body: LocationCheckRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.check_location(body.flow_token, client_ip(request), body.coordinates)
    return step_response(result, response)


@router.post("/location/otp/verify", response_model=StepResult)
@limiter.limit(OTP_VERIFY_LIMIT)
async def verify_location_otp(
    request: Request,
    response: Response,
    body: OtpVerifyRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.verify_location_otp(body.flow_token, body.code)
    return step_response(result, response)


# ── Security questions ────────────────────────────────────────────────────────

@router.post("/security-questions", response_model=StepResult)
@limiter.limit(OTP_VERIFY_LIMIT)
async def security_questions(
    request: Request,
    response: Response,
    body: FlowRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.security_questions(body.flow_token)
    return step_response(result, response)


@router.post("/security-questions/verify", response_model=StepResult)
@limiter.limit(OTP_VERIFY_LIMIT)
async def verify_security_answers(
    request: Request,
    response: Response,
    body: SecurityAnswersRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.verify_security_answers(body.flow_token, body.answers)
    return step_response(result, response)


# ── Cancel ────────────────────────────────────────────────────────────────────

@router.post("/cancel", response_model=StepResult)
async def cancel(
    response: Response,
    body: FlowRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.cancel(body.flow_token)
    return step_response(result, response)
