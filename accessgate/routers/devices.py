"""
Device router: issues the persistent token for clients that cannot generate
one themselves. The client stores it once and replays it on every device check.
"""
from fastapi import APIRouter, Request

from accessgate.core.rate_limiter import limiter
from accessgate.schemas.verification import PersistentTokenResponse
from accessgate.services.device_identity import issue_persistent_token

router = APIRouter()


@router.post("/persistent-token", response_model=PersistentTokenResponse, status_code=201)
@limiter.limit("20/minute")
async def create_persistent_token(request: Request):
    return PersistentTokenResponse(persistent_token=issue_persistent_token())
