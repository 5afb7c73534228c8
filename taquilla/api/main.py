"""
FastAPI app assembly: logging, middleware, error mapping and router wiring.
"""
import logging
import os

from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

# Configure logging
LOG_LEVEL_NAME = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL = getattr(logging, LOG_LEVEL_NAME, logging.INFO)
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)
logger.setLevel(LOG_LEVEL)
logger.info("app_startup: log_level=%s", LOG_LEVEL_NAME)


from taquilla.db import schemas
from taquilla.api.deps import get_current_user_context
from taquilla.api.tickets import router as tickets_router, events_router as event_tickets_router
from taquilla.api.scanner import router as scanner_router
from taquilla.api.nfc import router as nfc_router
from taquilla.api.wallets import router as wallets_router
from taquilla.api.audits import router as audits_router
from taquilla.errors import TaquillaError
from taquilla.utils.runtime import dev_mode_active
from taquilla.utils.feature_flags import get_feature_flags

# Database schema is managed by Alembic migrations.

app = FastAPI(
    title="Taquilla Ticketing Service",
    description="API for event tickets, gate scanning, NFC bands and cashless wallets.",
    version="1.0.0",
)

# Avoid implicit trailing-slash redirects for predictable URLs
app.router.redirect_slashes = False

DEFAULT_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:8000",
]


def _cors_origins():
    raw = os.getenv("CORS_ORIGINS", "")
    configured = [o.strip() for o in raw.split(",") if o.strip()]
    return configured or DEFAULT_ORIGINS


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Middleware: enforce read-only for unauthenticated requests
@app.middleware("http")
async def enforce_readonly_for_guests(request: Request, call_next):
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        # In dev mode, allow; authentication is handled by route dependencies
        is_dev_mode = os.getenv("DEV_MODE", "false").lower() == "true"
        if not is_dev_mode:
            h = request.headers
            user_present = (
                h.get("x-auth-request-user")
                or h.get("x-auth-request-email")
                or h.get("x-forwarded-user")
                or h.get("x-forwarded-email")
            )
            if not user_present:
                return JSONResponse(
                    {"detail": "Guest mode is read-only. Sign in to perform changes."},
                    status_code=status.HTTP_401_UNAUTHORIZED,
                )
    return await call_next(request)


@app.exception_handler(TaquillaError)
async def handle_domain_error(request: Request, exc: TaquillaError):
    if exc.status_code >= 500:
        logger.error("domain_error path=%s code=%s: %s", request.url.path, exc.code, exc.message)
    else:
        logger.info("domain_error path=%s code=%s: %s", request.url.path, exc.code, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


app.include_router(tickets_router)
app.include_router(event_tickets_router)
app.include_router(scanner_router)
app.include_router(nfc_router)
app.include_router(wallets_router)
app.include_router(audits_router)


@app.get("/users/me", response_model=schemas.CurrentUser)
def get_me(user_context=Depends(get_current_user_context)):
    _, current_user = user_context
    return current_user


@app.get("/health")
def health_check():
    try:
        dev_mode = dev_mode_active()
    except RuntimeError as exc:
        logger.error("DEV_MODE misconfiguration detected: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="DEV_MODE misconfigured")
    return {
        "status": "ok",
        "service": "taquilla",
        "dev_mode": dev_mode,
        "features": get_feature_flags(),
    }
