"""
HTTP mapping for step results.

Routers return the StepResult body unchanged; only the status code depends
on the outcome.
"""
from fastapi import Response, status

from accessgate.schemas.verification import ErrorKind, StepResult

_ERROR_STATUS = {
    ErrorKind.INPUT_INVALID: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CREDENTIAL_FAILURE: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.CHALLENGE_EXPIRED_OR_WRONG: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UPSTREAM_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def step_response(result: StepResult, response: Response, success_status: int = status.HTTP_200_OK) -> StepResult:
    if result.status == "failed":
        response.status_code = _ERROR_STATUS.get(result.error, status.HTTP_400_BAD_REQUEST)
    else:
        response.status_code = success_status
    return result
