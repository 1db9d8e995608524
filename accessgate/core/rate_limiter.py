"""
slowapi rate limiter instance.

This is the retry budget for credential and OTP attempts: the verification
engine itself never counts failures, it leaves an OTP challenge open until it
expires and lets these limits cut off brute force.

Every rate-limited endpoint MUST have `request: Request` as a parameter
(slowapi needs it to extract the client IP). The @limiter.limit decorator must be
placed BELOW the @router.xxx decorator.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200/minute"],
)

CREDENTIALS_LIMIT = "10/minute"
OTP_VERIFY_LIMIT = "10/minute"
OTP_SEND_LIMIT = "3/minute"
