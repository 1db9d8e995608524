"""
Login router: entry point of a login flow.

  POST /login/credentials → email + password → flow_token, state DEVICE_CHECK

The remaining steps (device, OTP, location) live in routers/steps.py and are
mounted under /login as well as /signup.
"""
from fastapi import APIRouter, Depends, Request, Response

from accessgate.core.dependencies import get_orchestrator
from accessgate.core.rate_limiter import limiter, CREDENTIALS_LIMIT
from accessgate.core.responses import step_response
from accessgate.schemas.ledger import FlowKind
from accessgate.schemas.verification import CredentialsRequest, StepResult
from accessgate.services.orchestrator import VerificationOrchestrator

router = APIRouter()


@router.post("/credentials", response_model=StepResult)
@limiter.limit(CREDENTIALS_LIMIT)
async def credentials(
    request: Request,
    response: Response,
    body: CredentialsRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """
    Always the same failure body for unknown email and wrong password.
    """
    result = await orchestrator.begin_credential_check(body.email, body.password, FlowKind.LOGIN)
    return step_response(result, response)
