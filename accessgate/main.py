"""
Application entry point.

Run locally:
    uvicorn accessgate.main:app --reload --port 8000

API docs available at:
    http://localhost:8000/docs   (Swagger UI)
    http://localhost:8000/redoc  (ReDoc)
"""
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from accessgate.config import settings
from accessgate.core.exceptions import LedgerError, UpstreamUnavailableError
from accessgate.core.logging import configure_logging
from accessgate.core.rate_limiter import limiter
from accessgate.routers import devices, login, security, signup, steps

logger = logging.getLogger(__name__)


async def _service_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak which dependency failed or why
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable, please try again later"},
    )


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="AccessGate API",
        description=(
            "Multi-factor account verification for signup and login: "
            "credentials, device recognition, location risk and one-time codes."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── Rate Limiter ──────────────────────────────────────────────────────────
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ── Domain errors that escape a router ────────────────────────────────────
    app.add_exception_handler(UpstreamUnavailableError, _service_unavailable_handler)
    app.add_exception_handler(LedgerError, _service_unavailable_handler)

    # ── CORS ──────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Routers ───────────────────────────────────────────────────────────────
    app.include_router(signup.router, prefix="/signup", tags=["Signup"])
    app.include_router(steps.router, prefix="/signup", tags=["Signup"])

    app.include_router(login.router, prefix="/login", tags=["Login"])
    app.include_router(steps.router, prefix="/login", tags=["Login"])

    app.include_router(devices.router, prefix="/devices", tags=["Devices"])
    app.include_router(security.router, prefix="/security", tags=["Security"])

    # ── Health Check ──────────────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    def health_check():
        return {"status": "ok", "version": "1.0.0"}

    return app


app = create_app()
