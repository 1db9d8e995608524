"""
Signup router.

  1. POST /signup/register → create the account + credential check → flow_token
  2. POST /signup/device → ... → COMPLETE (routers/steps.py, mounted under /signup)

A new account has no device or location on record, so a signup always goes
through the email code and the location code.
"""
from fastapi import APIRouter, Depends, Request, Response, status

from accessgate.core.dependencies import get_account_directory, get_orchestrator
from accessgate.core.rate_limiter import limiter
from accessgate.core.responses import step_response
from accessgate.schemas.ledger import FlowKind
from accessgate.schemas.verification import SignupRequest, StepResult
from accessgate.services.account_directory import AccountDirectory
from accessgate.services.orchestrator import VerificationOrchestrator

router = APIRouter()


@router.post("/register", response_model=StepResult, status_code=201)
@limiter.limit("5/minute")
async def register(
    request: Request,
    response: Response,
    body: SignupRequest,
    directory: AccountDirectory = Depends(get_account_directory),
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    directory.create_account(body.email, body.password, body.full_name)
    result = await orchestrator.begin_credential_check(body.email, body.password, FlowKind.SIGNUP)
    return step_response(result, response, success_status=status.HTTP_201_CREATED)
